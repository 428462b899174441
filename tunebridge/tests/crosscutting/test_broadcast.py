import threading
from unittest.mock import Mock

from tunebridge.crosscutting.broadcast import BroadcastChannel


class TestBroadcastChannel:
    """Tests for best-effort event fan-out."""

    def setup_method(self):
        """Set up test fixtures."""
        self.channel = BroadcastChannel(queue_size=3)

    def test_every_subscriber_receives_events(self):
        first = self.channel.subscribe()
        second = self.channel.subscribe()

        self.channel.log("hello")

        assert [e['message'] for e in first.drain()] == ["hello"]
        assert [e['message'] for e in second.drain()] == ["hello"]

    def test_late_subscriber_gets_no_replay(self):
        self.channel.log("before")
        late = self.channel.subscribe()

        assert late.drain() == []

    def test_full_queue_drops_for_that_subscriber_only(self):
        slow = self.channel.subscribe()
        for i in range(3):
            self.channel.log(f"m{i}")
        fast = self.channel.subscribe()

        self.channel.log("m3")

        assert slow.dropped == 1
        assert [e['message'] for e in slow.drain()] == ["m0", "m1", "m2"]
        assert [e['message'] for e in fast.drain()] == ["m3"]

    def test_broken_subscriber_is_removed(self):
        broken = self.channel.subscribe()
        healthy = self.channel.subscribe()
        broken.deliver = Mock(side_effect=RuntimeError("socket gone"))

        self.channel.log("one")
        self.channel.log("two")

        assert broken.deliver.call_count == 1
        assert len(healthy.drain()) == 2
        assert self.channel.subscriber_count == 1

    def test_broken_listener_is_removed_and_publish_never_raises(self):
        listener = Mock(side_effect=ValueError("bad"))
        good = Mock()
        self.channel.add_listener(listener)
        self.channel.add_listener(good)

        self.channel.finish('success')
        self.channel.finish('success')

        assert listener.call_count == 1
        assert good.call_count == 2

    def test_closed_subscription_stops_receiving(self):
        subscription = self.channel.subscribe()
        subscription.close()

        self.channel.log("ignored")

        assert subscription.closed
        assert subscription.drain() == []
        assert self.channel.subscriber_count == 0

    def test_iteration_ends_on_close(self):
        subscription = BroadcastChannel().subscribe()
        received = []

        def consume():
            for event in subscription:
                received.append(event['type'])

        consumer = threading.Thread(target=consume)
        consumer.start()
        subscription.deliver({'type': 'log'})
        subscription.close()
        consumer.join(timeout=5)

        assert not consumer.is_alive()
        assert received in (['log'], [])

    def test_get_times_out_with_none(self):
        assert self.channel.subscribe().get(timeout=0.01) is None


class TestEventShapes:
    """Tests for the progress/log/finish payloads."""

    def test_progress_event(self):
        event = BroadcastChannel().progress(3, 10, "Matched 3/10", track_info={'name': 'Song'})

        assert event == {
            'type': 'progress',
            'data': {'current': 3, 'total': 10, 'currentStep': "Matched 3/10",
                     'status': 'running', 'trackInfo': {'name': 'Song'}},
        }

    def test_log_event_carries_fields(self):
        event = BroadcastChannel().log("matched", level='success', tier='isrc')

        assert event['type'] == 'log'
        assert event['level'] == 'success'
        assert event['fields'] == {'tier': 'isrc'}
        assert 'ts' in event

    def test_finish_event(self):
        event = BroadcastChannel().finish('success', found=2, not_found=1, skipped=3, message="done", jobId='sync_1')

        assert event == {'type': 'finish', 'status': 'success', 'found': 2, 'notFound': 1,
                         'skipped': 3, 'message': "done", 'jobId': 'sync_1'}

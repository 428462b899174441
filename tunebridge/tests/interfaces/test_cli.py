import argparse
import json
import logging
import os
import tempfile
from unittest.mock import Mock, patch

import pytest

from tunebridge.application.export import ExportDocument
from tunebridge.domain.entities import Playlist, ScheduledJob, SyncJob, SyncStats, SyncStatus
from tunebridge.domain.errors import ConfigurationError, SyncInProgress
from tunebridge.interfaces.cli import CLI


class TestCLI:
    """Tests for CLI functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.services = Mock()
        self.factory = Mock(return_value=self.services)
        self.cli = CLI(services_factory=self.factory)

    def teardown_method(self):
        """Detach the handlers installed by setup_logging."""
        logger = logging.getLogger('tunebridge')
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()

    def test_create_parser(self):
        parser = self.cli._create_parser()

        assert isinstance(parser, argparse.ArgumentParser)

        args = parser.parse_args(['sync', '--source-playlist', 'sp1', '--destination-playlist', 'p.1'])
        assert args.command == 'sync'
        assert args.source == 'spotify'
        assert args.report_path == 'reports/'
        assert args.log_level == 'INFO'

        args = parser.parse_args(['export', '--service', 'apple', '--playlist', 'p.1', '--format', 'xspf'])
        assert args.format == 'xspf'

        args = parser.parse_args(['serve', '--port', '8080', '--no-scheduler'])
        assert args.port == 8080
        assert args.no_scheduler is True

    def test_invalid_choice_exits(self):
        with pytest.raises(SystemExit):
            self.cli.run(['export', '--service', 'tidal', '--playlist', 'x'])

    def test_no_command(self):
        assert self.cli.run([]) == 1
        self.factory.assert_not_called()

    def test_sync_writes_report(self, capsys):
        job = SyncJob(id='sync_1', source_ref='sp1', destination_ref='p.1', status=SyncStatus.COMPLETED,
                      stats=SyncStats(total=3, matched=2, added=2, unavailable=1))
        self.services.orchestrator.run_exclusive.return_value = job

        code = self.cli.run(['sync', '--source-playlist', 'sp1', '--destination-playlist', 'p.1',
                             '--report-path', self.temp_dir])

        assert code == 0
        self.services.orchestrator.run_exclusive.assert_called_once_with('sp1', 'p.1', None)
        report_file = os.path.join(self.temp_dir, 'sync_report_sync_1.json')
        with open(report_file, encoding='utf-8') as f:
            assert json.load(f)['stats']['added'] == 2
        out = capsys.readouterr().out
        assert "Job sync_1: completed" in out
        assert "added=2" in out

    def test_sync_from_yandex(self):
        self.services.orchestrator.run_exclusive.return_value = SyncJob(
            id='sync_2', source_ref='1001', destination_ref='p.1', status=SyncStatus.COMPLETED)

        self.cli.run(['sync', '--source', 'yandex', '--source-playlist', '1001', '--destination-playlist', 'p.1',
                      '--report-path', self.temp_dir])

        self.services.orchestrator.run_exclusive.assert_called_once_with('1001', 'p.1', {'source_service': 'yandex'})

    def test_failed_sync_exit_code(self):
        self.services.orchestrator.run_exclusive.return_value = SyncJob(
            id='sync_3', source_ref='sp1', destination_ref='p.1', status=SyncStatus.ERROR, error='Apple 401')

        code = self.cli.run(['sync', '--source-playlist', 'sp1', '--destination-playlist', 'p.1',
                             '--report-path', self.temp_dir])

        assert code == 1

    def test_configuration_error_exit_code(self):
        self.factory.side_effect = ConfigurationError("Apple Music user token not configured")

        assert self.cli.run(['jobs', 'list']) == 2

    def test_sync_in_progress_exit_code(self):
        self.services.orchestrator.run_exclusive.side_effect = SyncInProgress("busy")

        code = self.cli.run(['sync', '--source-playlist', 'sp1', '--destination-playlist', 'p.1'])

        assert code == 1

    def test_unexpected_error_exit_code(self, capsys):
        self.services.orchestrator.dedupe_playlist.side_effect = RuntimeError("boom")

        assert self.cli.run(['dedupe', '--service', 'spotify', '--playlist', 'pl1']) == 1
        assert "Error: boom" in capsys.readouterr().err

    def test_keyboard_interrupt_exit_code(self):
        self.services.orchestrator.dedupe_playlist.side_effect = KeyboardInterrupt()

        assert self.cli.run(['dedupe', '--service', 'spotify', '--playlist', 'pl1']) == 130

    def test_dedupe(self, capsys):
        self.services.orchestrator.dedupe_playlist.return_value = {
            'original_count': 5, 'new_count': 3, 'new_playlist_id': 'pl2', 'new_playlist_name': 'Mix (Deduped)'}

        assert self.cli.run(['dedupe', '--service', 'apple', '--playlist', 'p.1', '--name', 'Mix']) == 0

        self.services.orchestrator.dedupe_playlist.assert_called_once_with('apple', 'p.1', playlist_name='Mix')
        assert "5 -> 3 tracks" in capsys.readouterr().out

    def test_export_to_file(self):
        self.services.orchestrator.export_playlist.return_value = ExportDocument('application/json', '[]', 'json')
        output = os.path.join(self.temp_dir, 'out.json')

        code = self.cli.run(['export', '--service', 'spotify', '--playlist', 'pl1', '--format', 'json',
                             '--output', output])

        assert code == 0
        with open(output, encoding='utf-8') as f:
            assert f.read() == '[]'
        self.services.orchestrator.export_playlist.assert_called_once_with('spotify', 'pl1', 'json')

    def test_export_to_stdout(self, capsys):
        self.services.orchestrator.export_playlist.return_value = ExportDocument('text/plain', 'A - B', 'txt')

        self.cli.run(['export', '--service', 'yandex', '--playlist', '1001', '--format', 'txt'])

        assert capsys.readouterr().out.strip() == 'A - B'

    def test_jobs_list(self, capsys):
        self.services.jobs.list.return_value = [
            ScheduledJob(id='job_1', name='Nightly', next_run_at='2024-05-01T16:00:00'),
            ScheduledJob(id='job_2', name='Paused', enabled=False),
        ]

        assert self.cli.run(['jobs', 'list']) == 0

        out = capsys.readouterr().out
        assert "job_1: Nightly [map, spotify -> apple, enabled] at 16:00, next run 2024-05-01T16:00:00" in out
        assert "job_2: Paused [map, spotify -> apple, disabled] at 16:00, next run -" in out

    def test_playlists(self, capsys):
        self.services.orchestrator.list_playlists.return_value = [
            Playlist(id='p1', name='Mine', is_owned=True, track_count=4),
            Playlist(id='p2', name='Theirs', track_count=9),
        ]

        assert self.cli.run(['playlists', '--service', 'spotify']) == 0

        assert capsys.readouterr().out.splitlines() == ["p1\tMine\t4", "p2\tTheirs\t9 (followed)"]

    def test_join_defaults_other_service(self, capsys):
        self.services.orchestrator.join_playlists.return_value = {
            'destination_playlist_id': 'pl3', 'destination_playlist_name': 'A+B', 'track_count': 3}

        code = self.cli.run(['join', '--service', 'spotify', '--playlist', 'pl1', '--other-playlist', 'pl2',
                             '--name', 'A+B'])

        assert code == 0
        self.services.orchestrator.join_playlists.assert_called_once_with('spotify', 'pl1', None, 'pl2', 'A+B')
        assert "Created 'A+B' (pl3) with 3 tracks" in capsys.readouterr().out

    def test_join_with_failed_sync_exit_code(self):
        self.services.orchestrator.join_playlists.return_value = {
            'destination_playlist_id': 'p.9', 'destination_playlist_name': 'Both', 'track_count': 1,
            'sync_job_id': 'sync_1', 'sync_status': 'error'}

        code = self.cli.run(['join', '--service', 'apple', '--playlist', 'p.1', '--other-service', 'yandex',
                             '--other-playlist', '1001', '--name', 'Both'])

        assert code == 1

    def test_split(self, capsys):
        self.services.orchestrator.split_playlist.return_value = {
            'original_count': 3,
            'new_playlists': [{'id': 'pl2', 'name': 'Part 1', 'trackCount': 2},
                              {'id': 'pl3', 'name': 'Part 2', 'trackCount': 1}],
        }

        assert self.cli.run(['split', '--service', 'apple', '--playlist', 'p.1', '--size', '2',
                             '--name', 'Part']) == 0

        self.services.orchestrator.split_playlist.assert_called_once_with('apple', 'p.1', 2, 'Part')
        out = capsys.readouterr().out
        assert "pl3\tPart 2\t1" in out
        assert "Split 3 tracks into 2 playlists" in out

    def test_history_records(self, capsys):
        self.services.history.list.return_value = [{
            'id': 'sync_1', 'status': 'completed', 'sourceService': 'spotify', 'sourcePlaylistId': 'sp1',
            'destinationService': 'apple', 'destinationPlaylistId': 'p.1', 'startedAt': '2024-05-01T10:00:00',
            'results': {'added': 4},
        }]

        assert self.cli.run(['history', '--limit', '5']) == 0

        self.services.history.list.assert_called_once_with(limit=5)
        assert ("sync_1: completed spotify:sp1 -> apple:p.1 added=4 at 2024-05-01T10:00:00"
                in capsys.readouterr().out)

    def test_history_stats(self, capsys):
        self.services.history.statistics.return_value = {
            'total': 3, 'completed': 2, 'failed': 1, 'averageSuccessRate': 87.5, 'totalTracksTransferred': 40}

        assert self.cli.run(['history', '--stats']) == 0

        assert ("total=3 completed=2 failed=1 average_success_rate=87.5% tracks_transferred=40"
                in capsys.readouterr().out)

    def test_serve_starts_http_server(self):
        with patch('tunebridge.interfaces.http.HTTPServer') as server_cls:
            code = self.cli.run(['serve', '--port', '8080', '--no-scheduler'])

        assert code == 0
        server_cls.assert_called_once_with(self.services, host='localhost', port=8080)
        server_cls.return_value.run.assert_called_once_with(with_scheduler=False)

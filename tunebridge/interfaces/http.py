import os
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request

from tunebridge.domain.errors import (
    AuthorizationExpired,
    ConfigurationError,
    NotFound,
    PermanentFailure,
    RateLimited,
    SyncInProgress,
    TemporaryFailure,
)
from tunebridge.crosscutting.logging import log_error
from tunebridge.interfaces.services import Services


KEEPALIVE_SEC = 15


def _body() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


class HTTPServer:
    """HTTP interface for tunebridge: sync control, features, auto-sync jobs and an SSE event stream."""

    def __init__(self, services: Services, host: str = 'localhost', port: int = 3000, debug: bool = False):
        self.services = services
        self.host = host
        self.port = port
        self.debug = debug
        self.app = Flask(__name__)
        self.logger = logging.getLogger(__name__)

        self.version = "0.1.0"
        self.commit = os.getenv('GIT_COMMIT', 'unknown')

        self._setup_error_handlers()
        self._setup_routes()

    def _error(self, error: Exception, status: int):
        payload = {'success': False, 'error': str(error) or type(error).__name__}
        return jsonify(payload), status

    def _setup_error_handlers(self) -> None:
        app = self.app

        @app.errorhandler(SyncInProgress)
        def sync_in_progress(e):
            return self._error(e, 409)

        @app.errorhandler(ConfigurationError)
        def configuration_error(e):
            return self._error(e, 400)

        @app.errorhandler(ValueError)
        def bad_request(e):
            return self._error(e, 400)

        @app.errorhandler(AuthorizationExpired)
        def unauthorized(e):
            return self._error(e, 401)

        @app.errorhandler(NotFound)
        def not_found(e):
            return self._error(e, 404)

        @app.errorhandler(RateLimited)
        @app.errorhandler(TemporaryFailure)
        def unavailable(e):
            return self._error(e, 503)

        @app.errorhandler(PermanentFailure)
        def upstream_rejected(e):
            log_error(self.logger, "Upstream request rejected", e)
            return self._error(e, 502)

    def _setup_routes(self) -> None:
        app = self.app
        services = self.services

        @app.route('/health', methods=['GET'])
        def health_check():
            orchestrator = services._orchestrator
            return jsonify({
                'status': 'healthy',
                'version': self.version,
                'commit': self.commit,
                'syncInProgress': bool(orchestrator and orchestrator.is_busy),
                'config': services.credentials.get_config_summary(),
                'timestamp': datetime.now().isoformat(),
            }), 200

        @app.route('/', methods=['GET'])
        def root():
            return jsonify({
                'service': 'tunebridge HTTP Interface',
                'version': self.version,
                'endpoints': {
                    'health': '/health',
                    'sync': '/sync',
                    'events': '/events',
                    'dedupe': '/features/dedupe_playlist',
                    'export': '/features/export_playlist',
                    'join': '/features/join_playlists',
                    'split': '/features/split_playlist',
                    'playlists': '/playlists/<service>',
                    'history': '/history',
                    'auto_sync': '/auto-sync/jobs',
                },
            }), 200

        @app.route('/sync', methods=['POST'])
        def start_sync():
            body = _body()
            source_ref = body.get('sourcePlaylistId')
            destination_ref = body.get('destinationPlaylistId')
            options = {'source_service': body['sourceService']} if body.get('sourceService') else None
            if not source_ref or not destination_ref:
                raise ConfigurationError("sourcePlaylistId and destinationPlaylistId are required")
            job_id = services.orchestrator.start_sync(source_ref, destination_ref, options)
            return jsonify({'success': True, 'jobId': job_id, 'status': 'accepted'}), 202

        @app.route('/sync/<job_id>', methods=['GET'])
        def sync_status(job_id: str):
            orchestrator = services.orchestrator
            try:
                job = orchestrator.get_job_status(job_id)
            except KeyError:
                return jsonify({'success': False, 'error': f"Unknown job: {job_id}"}), 404
            data = job.to_json()
            if job.is_terminal:
                data['report'] = orchestrator.get_report(job_id).to_json()
            return jsonify(data), 200

        @app.route('/events', methods=['GET'])
        def events():
            subscription = services.channel.subscribe()
            max_events = request.args.get('max_events', type=int)

            def stream():
                sent = 0
                try:
                    yield ": connected\n\n"
                    while not subscription.closed:
                        event = subscription.get(timeout=KEEPALIVE_SEC)
                        if event is None:
                            yield ": keep-alive\n\n"
                            continue
                        yield f"data: {json.dumps(event, default=str)}\n\n"
                        sent += 1
                        if max_events is not None and sent >= max_events:
                            break
                finally:
                    subscription.close()

            return Response(
                stream(),
                content_type='text/event-stream',
                headers={'Cache-Control': 'no-cache', 'Connection': 'keep-alive'},
            )

        @app.route('/features/dedupe_playlist', methods=['POST'])
        def dedupe_playlist():
            body = _body()
            result = services.orchestrator.dedupe_playlist(
                body.get('service') or 'spotify',
                body.get('playlistId'),
                playlist_name=body.get('playlistName'),
            )
            return jsonify({
                'success': True,
                'originalCount': result['original_count'],
                'newCount': result['new_count'],
                'newPlaylistId': result['new_playlist_id'],
                'newPlaylistName': result['new_playlist_name'],
            }), 200

        @app.route('/features/export_playlist', methods=['POST'])
        def export_playlist():
            body = _body()
            fmt = body.get('format') or 'csv'
            playlist_id = body.get('playlistId')
            document = services.orchestrator.export_playlist(body.get('service') or 'spotify', playlist_id, fmt)
            filename = f"{body.get('playlistName') or playlist_id}.{document.extension}"
            return Response(
                document.body,
                content_type=f"{document.content_type}; charset=utf-8",
                headers={'Content-Disposition': f'attachment; filename="{filename}"'},
            )

        @app.route('/features/join_playlists', methods=['POST'])
        def join_playlists():
            body = _body()
            result = services.orchestrator.join_playlists(
                body.get('serviceA'),
                body.get('playlistA'),
                body.get('serviceB'),
                body.get('playlistB'),
                body.get('newPlaylistName'),
            )
            payload = {
                'success': result.get('sync_status', 'completed') != 'error',
                'destinationPlaylistId': result['destination_playlist_id'],
                'destinationPlaylistName': result['destination_playlist_name'],
                'trackCount': result['track_count'],
            }
            if 'sync_job_id' in result:
                payload['syncJobId'] = result['sync_job_id']
                payload['syncStatus'] = result['sync_status']
            return jsonify(payload), 200

        @app.route('/features/split_playlist', methods=['POST'])
        def split_playlist():
            body = _body()
            result = services.orchestrator.split_playlist(
                body.get('service'),
                body.get('playlist'),
                body.get('splitSize', 50),
                body.get('baseName'),
            )
            return jsonify({
                'success': True,
                'originalCount': result['original_count'],
                'newPlaylists': result['new_playlists'],
            }), 200

        @app.route('/playlists/<service>', methods=['GET'])
        def list_playlists(service: str):
            playlists = services.orchestrator.list_playlists(service)
            return jsonify({'playlists': [p.to_json() for p in playlists]}), 200

        @app.route('/playlists/<service>/create', methods=['POST'])
        def create_playlist(service: str):
            body = _body()
            playlist = services.orchestrator.create_playlist(service, body.get('name'),
                                                             description=body.get('description') or '')
            return jsonify({'success': True, 'playlist': playlist.to_json()}), 200

        @app.route('/history', methods=['GET'])
        def list_history():
            records = services.history.list(
                limit=request.args.get('limit', 50, type=int),
                source_service=request.args.get('sourceService'),
                destination_service=request.args.get('destinationService'),
            )
            return jsonify({'success': True, 'transfers': records, 'count': len(records)}), 200

        @app.route('/history/stats', methods=['GET'])
        def history_stats():
            return jsonify({'success': True, 'stats': services.history.statistics()}), 200

        @app.route('/history/<record_id>', methods=['GET'])
        def get_history(record_id: str):
            try:
                record = services.history.get(record_id)
            except KeyError:
                return jsonify({'success': False, 'error': 'Transfer not found'}), 404
            return jsonify({'success': True, 'transfer': record}), 200

        @app.route('/history/<record_id>', methods=['DELETE'])
        def delete_history(record_id: str):
            removed = services.history.delete(record_id)
            if not removed:
                return jsonify({'success': False, 'error': 'Transfer not found'}), 404
            return jsonify({'success': True, 'removed': removed}), 200

        @app.route('/auto-sync/jobs', methods=['GET'])
        def list_jobs():
            return jsonify({'jobs': [j.to_json() for j in services.jobs.list()]}), 200

        @app.route('/auto-sync/jobs', methods=['POST'])
        def create_job():
            job = services.jobs.create(_body(), create_playlist=services.create_playlist)
            return jsonify({'success': True, 'job': job.to_json()}), 200

        @app.route('/auto-sync/jobs/<job_id>', methods=['PUT'])
        def update_job(job_id: str):
            try:
                job = services.jobs.update(job_id, _body())
            except KeyError:
                return jsonify({'success': False, 'error': 'Job not found'}), 404
            return jsonify({'success': True, 'job': job.to_json()}), 200

        @app.route('/auto-sync/jobs/<job_id>', methods=['DELETE'])
        def delete_job(job_id: str):
            removed = services.jobs.delete(job_id)
            return jsonify({'success': True, 'removed': removed}), 200

        @app.route('/auto-sync/jobs/<job_id>/run', methods=['POST'])
        def run_job(job_id: str):
            try:
                services.scheduler.run_now(job_id)
            except KeyError:
                return jsonify({'success': False, 'error': 'Job not found'}), 404
            return jsonify({'success': True, 'status': 'accepted'}), 200

    def run(self, with_scheduler: bool = True) -> None:
        """Run the HTTP server (and the auto-sync scheduler thread)."""
        self.logger.info(f"Starting tunebridge HTTP server on {self.host}:{self.port}")
        if with_scheduler:
            self.services.scheduler.start()
        try:
            self.app.run(host=self.host, port=self.port, debug=self.debug, threaded=True)
        finally:
            self.services.scheduler.stop()


def create_app(services: Optional[Services] = None) -> Flask:
    """Create the Flask app around `services` (built from the environment when omitted)."""
    server = HTTPServer(services or Services.from_env())
    return server.app

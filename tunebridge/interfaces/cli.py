import argparse
import os
import sys
import time
import signal
import logging
from typing import Callable, List, Optional

from tunebridge.application.export import FORMATS
from tunebridge.domain.entities import SyncStatus
from tunebridge.domain.errors import ConfigurationError, SyncInProgress
from tunebridge.crosscutting.logging import log_error, setup_logging
from tunebridge.crosscutting.reporting import SyncReport
from tunebridge.interfaces.services import Services


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


class CLI:
    """Command Line Interface for tunebridge."""

    def __init__(self, services_factory: Callable[[], Services] = Services.from_env):
        self.services_factory = services_factory
        self.parser = self._create_parser()
        self._start_time = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        common = argparse.ArgumentParser(add_help=False)
        common.add_argument(
            '--log-level',
            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
            default='INFO',
            help='Set logging level'
        )
        common.add_argument('--log-file', default=None, help='Also write JSON log lines to this file')

        parser = argparse.ArgumentParser(
            prog='tunebridge',
            description='Match playlists across music catalogs and transfer them'
        )
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        sync_parser = subparsers.add_parser('sync', parents=[common], help='Transfer a playlist into Apple Music')
        sync_parser.add_argument('--source-playlist', required=True, help='Source playlist ID')
        sync_parser.add_argument('--destination-playlist', required=True, help='Apple Music playlist ID')
        sync_parser.add_argument(
            '--source',
            choices=['spotify', 'yandex'],
            default='spotify',
            help='Source service (default: spotify)'
        )
        sync_parser.add_argument(
            '--report-path',
            default='reports/',
            help='Directory for the sync report (default: reports/)'
        )

        dedupe_parser = subparsers.add_parser('dedupe', parents=[common],
                                              help='Copy a playlist without duplicate tracks')
        dedupe_parser.add_argument('--service', choices=['spotify', 'apple'], required=True)
        dedupe_parser.add_argument('--playlist', required=True, help='Playlist ID')
        dedupe_parser.add_argument('--name', default=None, help='Playlist name (looked up when omitted)')

        export_parser = subparsers.add_parser('export', parents=[common], help='Export a playlist to a file')
        export_parser.add_argument('--service', choices=['spotify', 'apple', 'yandex'], required=True)
        export_parser.add_argument('--playlist', required=True, help='Playlist ID')
        export_parser.add_argument('--format', choices=list(FORMATS), default='csv')
        export_parser.add_argument('--output', default=None, help='Output file (stdout when omitted)')

        playlists_parser = subparsers.add_parser('playlists', parents=[common], help='List your playlists')
        playlists_parser.add_argument('--service', choices=['spotify', 'apple', 'yandex'], required=True)

        join_parser = subparsers.add_parser('join', parents=[common], help='Join two playlists into a new one')
        join_parser.add_argument('--service', choices=['spotify', 'apple'], required=True,
                                 help='Service of the first playlist and of the new playlist')
        join_parser.add_argument('--playlist', required=True, help='First playlist ID')
        join_parser.add_argument('--other-service', choices=['spotify', 'apple', 'yandex'], default=None,
                                 help='Service of the second playlist (default: --service)')
        join_parser.add_argument('--other-playlist', required=True, help='Second playlist ID')
        join_parser.add_argument('--name', required=True, help='Name of the new playlist')

        split_parser = subparsers.add_parser('split', parents=[common], help='Split a playlist into parts')
        split_parser.add_argument('--service', choices=['spotify', 'apple'], required=True)
        split_parser.add_argument('--playlist', required=True, help='Playlist ID')
        split_parser.add_argument('--size', type=int, default=50, help='Tracks per part (default: 50)')
        split_parser.add_argument('--name', required=True, help='Name prefix of the parts')

        history_parser = subparsers.add_parser('history', parents=[common], help='Past transfers')
        history_parser.add_argument('--limit', type=int, default=20)
        history_parser.add_argument('--stats', action='store_true', help='Show totals instead of records')

        serve_parser = subparsers.add_parser('serve', parents=[common], help='Run the HTTP interface')
        serve_parser.add_argument('--host', default='localhost')
        serve_parser.add_argument('--port', type=int, default=3000)
        serve_parser.add_argument('--no-scheduler', action='store_true', help='Do not run scheduled jobs')

        jobs_parser = subparsers.add_parser('jobs', parents=[common], help='Scheduled auto-sync jobs')
        jobs_sub = jobs_parser.add_subparsers(dest='jobs_command')
        jobs_sub.add_parser('list', help='List scheduled jobs')

        return parser

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger = logging.getLogger(__name__)
            logger.warning(f"Received signal {signum}, shutting down gracefully...")
            self._cleanup_resources()
            sys.exit(EXIT_INTERRUPTED)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        logger = logging.getLogger(__name__)
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")
            self._start_time = None

    def _sync(self, services: Services, args: argparse.Namespace) -> int:
        logger = logging.getLogger(__name__)
        options = {'source_service': args.source} if args.source != 'spotify' else None
        job = services.orchestrator.run_exclusive(args.source_playlist, args.destination_playlist, options)

        report = SyncReport.from_job(job)
        report_file = report.save(os.path.join(args.report_path, f"sync_report_{job.id}.json"))
        logger.info(f"Report saved to: {report_file}")

        stats = job.stats
        print(f"Job {job.id}: {job.status.value}")
        print(f"  total={stats.total} matched={stats.matched} added={stats.added} "
              f"skipped_duplicate={stats.skipped_duplicate} unavailable={stats.unavailable} failed={stats.failed}")
        if job.error:
            print(f"  error: {job.error}")
        print(f"  report: {report_file}")
        return EXIT_OK if job.status == SyncStatus.COMPLETED else EXIT_FAILURE

    def _dedupe(self, services: Services, args: argparse.Namespace) -> int:
        result = services.orchestrator.dedupe_playlist(args.service, args.playlist, playlist_name=args.name)
        print(f"Created '{result['new_playlist_name']}' ({result['new_playlist_id']}): "
              f"{result['original_count']} -> {result['new_count']} tracks")
        return EXIT_OK

    def _export(self, services: Services, args: argparse.Namespace) -> int:
        document = services.orchestrator.export_playlist(args.service, args.playlist, args.format)
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(document.body)
            print(f"Exported to {args.output}")
        else:
            print(document.body)
        return EXIT_OK

    def _playlists(self, services: Services, args: argparse.Namespace) -> int:
        playlists = services.orchestrator.list_playlists(args.service)
        for playlist in playlists:
            owned = '' if playlist.is_owned else ' (followed)'
            print(f"{playlist.id}\t{playlist.name}\t{playlist.track_count}{owned}")
        if not playlists:
            print("No playlists")
        return EXIT_OK

    def _join(self, services: Services, args: argparse.Namespace) -> int:
        result = services.orchestrator.join_playlists(args.service, args.playlist, args.other_service,
                                                      args.other_playlist, args.name)
        print(f"Created '{result['destination_playlist_name']}' ({result['destination_playlist_id']}) "
              f"with {result['track_count']} tracks")
        if result.get('sync_status') == SyncStatus.ERROR.value:
            print(f"  matching {args.other_playlist} failed, see job {result['sync_job_id']}", file=sys.stderr)
            return EXIT_FAILURE
        return EXIT_OK

    def _split(self, services: Services, args: argparse.Namespace) -> int:
        result = services.orchestrator.split_playlist(args.service, args.playlist, args.size, args.name)
        for part in result['new_playlists']:
            print(f"{part['id']}\t{part['name']}\t{part['trackCount']}")
        print(f"Split {result['original_count']} tracks into {len(result['new_playlists'])} playlists")
        return EXIT_OK

    def _history(self, services: Services, args: argparse.Namespace) -> int:
        if args.stats:
            stats = services.history.statistics()
            print(f"total={stats['total']} completed={stats['completed']} failed={stats['failed']} "
                  f"average_success_rate={stats['averageSuccessRate']}% "
                  f"tracks_transferred={stats['totalTracksTransferred']}")
            return EXIT_OK
        records = services.history.list(limit=args.limit)
        if not records:
            print("No transfers recorded")
        for record in records:
            results = record.get('results') or {}
            print(f"{record['id']}: {record['status']} {record['sourceService']}:{record['sourcePlaylistId']} -> "
                  f"{record['destinationService']}:{record['destinationPlaylistId']} "
                  f"added={results.get('added', 0)} at {record['startedAt']}")
        return EXIT_OK

    def _serve(self, services: Services, args: argparse.Namespace) -> int:
        from tunebridge.interfaces.http import HTTPServer

        server = HTTPServer(services, host=args.host, port=args.port)
        server.run(with_scheduler=not args.no_scheduler)
        return EXIT_OK

    def _jobs(self, services: Services, args: argparse.Namespace) -> int:
        if args.jobs_command != 'list':
            self.parser.print_help()
            return EXIT_FAILURE
        jobs = services.jobs.list()
        if not jobs:
            print("No scheduled jobs")
        for job in jobs:
            state = "enabled" if job.enabled else "disabled"
            print(f"{job.id}: {job.name} [{job.mode}, {job.source_service} -> {job.destination_service}, "
                  f"{state}] at {job.time_of_day}, next run {job.next_run_at or '-'}")
        return EXIT_OK

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run the CLI and return the process exit code."""
        self._start_time = time.time()
        args = self.parser.parse_args(argv)
        if not args.command:
            self.parser.print_help()
            return EXIT_FAILURE

        setup_logging(args.log_level, args.log_file)
        logger = logging.getLogger(__name__)
        handlers = {
            'sync': self._sync,
            'dedupe': self._dedupe,
            'export': self._export,
            'playlists': self._playlists,
            'join': self._join,
            'split': self._split,
            'history': self._history,
            'serve': self._serve,
            'jobs': self._jobs,
        }

        try:
            services = self.services_factory()
            return handlers[args.command](services, args)
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIG
        except SyncInProgress as e:
            print(str(e), file=sys.stderr)
            return EXIT_FAILURE
        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            return EXIT_INTERRUPTED
        except Exception as e:
            log_error(logger, f"CLI error: {e}", e)
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILURE
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    cli = CLI()
    cli._setup_signal_handlers()
    sys.exit(cli.run())


if __name__ == '__main__':
    main()

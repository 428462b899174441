import csv
import io
import json
from dataclasses import dataclass
from typing import Any, Dict, List
from xml.sax.saxutils import escape, quoteattr

from tunebridge.domain.entities import SourceTrack


FORMATS = ('csv', 'json', 'xml', 'xspf', 'txt', 'url')


@dataclass(frozen=True)
class ExportDocument:
    content_type: str
    body: str
    extension: str


def _row(track: SourceTrack) -> Dict[str, Any]:
    return {
        'id': track.source_id or '',
        'name': track.name,
        'artist': track.primary_artist,
        'album': track.album,
        'duration_ms': track.duration_ms or 0,
    }


def _track_url(service: str, track_id: str, storefront: str) -> str:
    if service == 'spotify':
        return f"https://open.spotify.com/track/{track_id}"
    return f"https://music.apple.com/{storefront}/song/{track_id}"


def build_export(fmt: str, tracks: List[SourceTrack], service: str, storefront: str = 'us') -> ExportDocument:
    """Serialize playlist tracks into one of FORMATS.

    Args:
        fmt: Output format, case-insensitive
        tracks: Tracks in playlist order
        service: Service the tracks came from, used for XML and URL output
        storefront: Apple Music storefront used in song URLs

    Returns:
        ExportDocument with the content type and rendered body
    """
    fmt = (fmt or 'csv').lower()
    if fmt not in FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")
    rows = [_row(t) for t in tracks]

    if fmt == 'json':
        return ExportDocument('application/json', json.dumps(rows, indent=2, ensure_ascii=False), 'json')

    if fmt == 'xml':
        lines = [f"<tracks service={quoteattr(service)}>"]
        for r in rows:
            lines.append(
                f"  <track><name>{escape(r['name'])}</name><artist>{escape(r['artist'])}</artist>"
                f"<album>{escape(r['album'])}</album><duration_ms>{r['duration_ms']}</duration_ms>"
                f"<id>{escape(str(r['id']))}</id></track>"
            )
        lines.append("</tracks>")
        return ExportDocument('application/xml', "\n".join(lines), 'xml')

    if fmt == 'xspf':
        lines = [
            '<?xml version="1.0" encoding="UTF-8"?>',
            '<playlist version="1" xmlns="http://xspf.org/ns/0/">',
            '  <trackList>',
        ]
        for r in rows:
            lines.extend([
                '    <track>',
                f"      <title>{escape(r['name'])}</title>",
                f"      <creator>{escape(r['artist'])}</creator>",
                f"      <album>{escape(r['album'])}</album>",
                f"      <duration>{r['duration_ms']}</duration>",
                '    </track>',
            ])
        lines.extend(['  </trackList>', '</playlist>'])
        return ExportDocument('application/xspf+xml', "\n".join(lines), 'xspf')

    if fmt == 'url':
        body = "\n".join(_track_url(service, r['id'], storefront) for r in rows if r['id'])
        return ExportDocument('text/plain', body, 'txt')

    if fmt == 'txt':
        body = "\n".join(f"{r['artist']} - {r['name']}" for r in rows)
        return ExportDocument('text/plain', body, 'txt')

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    buffer.write("Name,Artist,Album,Duration(ms),Id\n")
    for r in rows:
        writer.writerow([r['name'], r['artist'], r['album'], str(r['duration_ms']), r['id']])
    return ExportDocument('text/csv', buffer.getvalue().rstrip("\n"), 'csv')

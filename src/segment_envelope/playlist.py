"""
HLS playlist generation for envelope-protected segments.

Each media-playlist entry gets an #EXT-X-KEY directive pointing at the key
endpoint (tdf3 scheme) and carrying the segment's IV from its metadata.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Union
from urllib.parse import urlencode, urlparse, urlunparse

from .errors import InvalidInputError
from .metadata import SegmentMetadata
from .validation import MAX_PLAYLIST_SEGMENTS, validate_url

HLS_VERSION = 6


@dataclass(frozen=True)
class PlaylistVariant:
    """Playlist variant for adaptive bitrate streaming."""

    bandwidth: int
    resolution: str
    playlist_url: str


class HLSPlaylistGenerator:
    """Generates HLS playlists (.m3u8) for protected content."""

    def __init__(self, kas_base_url: str) -> None:
        self._kas_base_url = validate_url(kas_base_url)

    def generate_master_playlist(self, variants: Sequence[PlaylistVariant]) -> str:
        """Master playlist for adaptive bitrate streaming."""
        lines = ["#EXTM3U", f"#EXT-X-VERSION:{HLS_VERSION}"]
        for variant in variants:
            lines.append(
                f"#EXT-X-STREAM-INF:BANDWIDTH={variant.bandwidth},RESOLUTION={variant.resolution}"
            )
            lines.append(variant.playlist_url)
        return "\n".join(lines)

    def generate_media_playlist(
        self,
        segments: Sequence[SegmentMetadata],
        asset_id: str,
        user_id: str,
        session_id: str,
        target_duration: int = 10,
        media_sequence: int = 0,
    ) -> str:
        """
        Media playlist with one key directive per segment.

        Raises:
            InvalidInputError: If there are more than MAX_PLAYLIST_SEGMENTS segments
        """
        if len(segments) > MAX_PLAYLIST_SEGMENTS:
            raise InvalidInputError(
                f"Playlist has {len(segments)} segments (maximum {MAX_PLAYLIST_SEGMENTS})"
            )

        lines = [
            "#EXTM3U",
            f"#EXT-X-VERSION:{HLS_VERSION}",
            f"#EXT-X-TARGETDURATION:{target_duration}",
            f"#EXT-X-MEDIA-SEQUENCE:{media_sequence}",
        ]
        for segment in segments:
            key_url = self.key_url(asset_id, user_id, session_id, segment.index)
            lines.append(f'#EXT-X-KEY:METHOD=AES-128,URI="{key_url}",IV=0x{segment.iv.hex()}')
            lines.append(f"#EXTINF:{segment.duration:.3f},")
            lines.append(segment.url)
        lines.append("#EXT-X-ENDLIST")
        return "\n".join(lines)

    def generate_variant_playlist(
        self,
        segments: Sequence[SegmentMetadata],
        asset_id: str,
        user_id: str,
        session_id: str,
    ) -> str:
        """Media playlist whose target duration is the longest segment, rounded up."""
        longest = max((segment.duration for segment in segments), default=10.0)
        return self.generate_media_playlist(
            segments,
            asset_id=asset_id,
            user_id=user_id,
            session_id=session_id,
            target_duration=int(math.ceil(longest)),
        )

    def key_url(self, asset_id: str, user_id: str, session_id: str, segment_index: int) -> str:
        parsed = urlparse(self._kas_base_url)
        query = urlencode(
            [
                ("asset", asset_id),
                ("user", user_id),
                ("session", session_id),
                ("segment", str(segment_index)),
            ]
        )
        return urlunparse(("tdf3", parsed.netloc, "/key", "", query, ""))

    @staticmethod
    def save_playlist(content: str, path: Union[str, Path]) -> None:
        Path(path).write_text(content, encoding="utf-8")


def segment_urls(playlist: str) -> List[str]:
    """Segment URIs listed in a media playlist, in order."""
    return [line for line in playlist.splitlines() if line and not line.startswith("#")]

from __future__ import annotations

import logging
from typing import Iterable, List, Set

from festival_sync.crosscutting.logging import CorrelationContext, log_comparison_complete
from festival_sync.domain.entities import Artist
from festival_sync.domain.errors import Unauthorized

logger = logging.getLogger(__name__)


def artist_ids_from_tracks(track_items: Iterable[dict]) -> Set[str]:
    """Artist IDs credited on playlist track items (`{'track': {'artists': [...]}}`)."""
    ids: Set[str] = set()
    for item in track_items:
        track = (item or {}).get('track') or {}
        for artist in track.get('artists') or []:
            if artist and artist.get('id'):
                ids.add(artist['id'])
    return ids


def collect_playlist_artist_ids(catalog, playlist_ids: Iterable[str]) -> Set[str]:
    """Union of artist IDs across the selected playlists.

    Playlists are read one after another. A playlist that cannot be read is skipped;
    an invalid token aborts the whole collection.
    """
    artist_ids: Set[str] = set()
    for playlist_id in playlist_ids:
        with CorrelationContext(playlist_id=playlist_id):
            logger.info(f"Fetching tracks for selected playlist: {playlist_id}")
            try:
                tracks = catalog.list_playlist_tracks(playlist_id)
            except Unauthorized:
                raise
            except Exception as e:
                logger.error(f"Error fetching tracks for playlist {playlist_id}: {e}")
                continue
            logger.info(f"Found {len(tracks)} tracks in playlist {playlist_id}")
            artist_ids |= artist_ids_from_tracks(tracks)
    return artist_ids


def match_festival_artists(festival_artists: Iterable[Artist], artist_ids: Set[str]) -> List[Artist]:
    """Festival artists also present in the user's playlists, in festival order."""
    return [artist for artist in festival_artists if artist.id in artist_ids]


def compare_selected_playlists(catalog, festival_artists: List[Artist],
                               playlist_ids: List[str]) -> List[Artist]:
    artist_ids = collect_playlist_artist_ids(catalog, playlist_ids)
    matched = match_festival_artists(festival_artists, artist_ids)
    log_comparison_complete(logger, len(festival_artists), len(playlist_ids),
                            len(artist_ids), len(matched))
    return matched

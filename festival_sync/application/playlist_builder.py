from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from festival_sync.domain.entities import Artist, CreatedPlaylist
from festival_sync.domain.errors import Unauthorized

logger = logging.getLogger(__name__)

TRACKS_PER_ARTIST = 2
MAX_TOTAL_TRACKS = 100
DEFAULT_PLAYLIST_NAME = "Festival Sync Matches"


def default_playlist_name(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"{DEFAULT_PLAYLIST_NAME} ({today.isoformat()})"


def collect_top_track_uris(catalog, artists: List[Artist], market: str,
                           per_artist: int = TRACKS_PER_ARTIST,
                           max_total: int = MAX_TOTAL_TRACKS) -> List[str]:
    """Top track URIs for each artist, deduplicated in order.

    Collection stops once `max_total` URIs are gathered. An artist whose top tracks
    cannot be fetched is skipped.
    """
    uris: List[str] = []
    for artist in artists:
        if len(uris) >= max_total:
            logger.info("Reached max tracks limit, stopping track fetching")
            break
        try:
            tracks = catalog.artist_top_tracks(artist.id, market)
        except Unauthorized:
            raise
        except Exception as e:
            logger.error(f"Error getting top tracks for {artist.name} ({artist.id}): {e}")
            continue
        picked = [t.get('uri') for t in tracks[:per_artist] if t and t.get('uri')]
        logger.debug(f"Found {len(picked)} tracks for {artist.name}")
        uris.extend(picked)

    # dict keeps first-seen order
    unique = list(dict.fromkeys(uris))
    return unique[:max_total]


def build_playlist(catalog, artists: List[Artist],
                   playlist_name: Optional[str] = None,
                   today: Optional[date] = None) -> CreatedPlaylist:
    """Create a public playlist seeded with the top tracks of the matched artists.

    Args:
        catalog: Spotify catalog bound to the current user
        artists: Matched festival artists
        playlist_name: Custom name; a dated default is used when blank
        today: Date used in the default name and description

    Returns:
        The created playlist with its URL and the number of tracks added
    """
    if not artists:
        raise ValueError("No artists provided to create playlist")

    today = today or date.today()
    name = (playlist_name or '').strip() or default_playlist_name(today)
    description = f"Artists from your festival sync results ({today.isoformat()})"

    created = catalog.create_playlist(name, description=description, public=True)
    playlist_id = created['id']
    playlist_url = (created.get('external_urls') or {}).get('spotify')
    logger.info(f"Playlist created with ID: {playlist_id}")

    market = catalog.user_market()
    logger.info(f"Using market {market} for top tracks")
    uris = collect_top_track_uris(catalog, artists, market)

    added = 0
    if uris:
        added = catalog.add_tracks(playlist_id, uris)
        logger.info(f"Added {added} tracks to playlist {playlist_id}")
    else:
        logger.info("No track URIs found to add to the playlist")

    return CreatedPlaylist(id=playlist_id, name=name, url=playlist_url, tracks_added=added)

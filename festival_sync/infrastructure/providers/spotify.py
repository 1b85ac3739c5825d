import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
import spotipy
from spotipy.exceptions import SpotifyException

from festival_sync.application.pagination import fetch_all_pages
from festival_sync.domain.entities import Artist, Playlist
from festival_sync.domain.errors import (
    Forbidden, ProviderError, RateLimited, Unauthorized
)

logger = logging.getLogger(__name__)

DEFAULT_MARKET = 'US'
ADD_TRACKS_BATCH_SIZE = 100
ALTERNATIVES_LIMIT = 5
AUTOCOMPLETE_LIMIT = 5
AUTOCOMPLETE_MIN_QUERY = 2


def translate_error(error: Exception) -> Exception:
    """Map a spotipy/requests failure onto the domain error hierarchy."""
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, SpotifyException):
        status = error.http_status
        message = error.msg or str(error)
        if status == 401:
            return Unauthorized(message)
        if status == 403:
            return Forbidden(message)
        if status == 429:
            headers = getattr(error, 'headers', None) or {}
            return RateLimited(message, retry_after=headers.get('Retry-After', headers.get('retry-after')))
        return ProviderError(message, status_code=status)
    if isinstance(error, requests.exceptions.RequestException):
        return ProviderError(f"Spotify request failed: {error}")
    return error


def _artist_from_spotify(item: Dict[str, Any], search_query: Optional[str] = None,
                         with_images: bool = False) -> Artist:
    return Artist(
        id=item['id'],
        name=item.get('name', ''),
        uri=item.get('uri'),
        images=list(item.get('images') or []) if with_images else [],
        search_query=search_query,
    )


class SpotifyCatalog:
    """Spotify Web API access for one user session.

    Constructed per request with that session's access token; nothing is shared
    between users. spotipy's own retry is disabled so rate limiting surfaces to
    `fetch_all_pages`.
    """

    def __init__(self,
                 access_token: str,
                 client: Optional[Any] = None,
                 requests_timeout: int = 15,
                 max_retries: int = 3,
                 sleep: Optional[Callable[[float], None]] = None):
        """Initialize Spotify catalog.

        Args:
            access_token: Spotify access token of the current user
            client: Pre-built spotipy client (tests inject a mock here)
            requests_timeout: HTTP timeout in seconds for the spotipy client
            max_retries: Attempts per page when paginating rate-limited endpoints
            sleep: Wait function used between pagination retries
        """
        self.access_token = access_token
        self.max_retries = max_retries
        self._sleep = sleep
        # a plain Session mounts no urllib3 Retry, so 429 and 5xx arrive with their headers
        self._client = client or spotipy.Spotify(
            auth=access_token,
            requests_session=requests.Session(),
            requests_timeout=requests_timeout,
        )

    def _call(self, operation: str, func: Callable, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (SpotifyException, requests.exceptions.RequestException) as e:
            logger.debug(f"Spotify {operation} failed: {e}")
            raise translate_error(e) from e

    def _fetch_all(self, page_fetcher) -> List[Any]:
        if self._sleep is None:
            return fetch_all_pages(page_fetcher, max_retries=self.max_retries)
        return fetch_all_pages(page_fetcher, max_retries=self.max_retries, sleep=self._sleep)

    def current_user(self) -> Dict[str, Any]:
        return self._call('current_user', self._client.current_user)

    def user_market(self) -> str:
        """Return the user's country for top-track lookups, defaulting to US."""
        try:
            me = self.current_user()
            return me.get('country') or DEFAULT_MARKET
        except Exception as e:
            logger.warning(f"Error getting user market, defaulting to {DEFAULT_MARKET}: {e}")
            return DEFAULT_MARKET

    def search_artists(self, query: str, limit: int = 1, with_images: bool = False) -> List[Artist]:
        """Search Spotify's artist catalog.

        Args:
            query: Free-text artist name
            limit: Maximum number of artists to return
            with_images: Keep image metadata on the returned artists

        Returns:
            Artists in Spotify's relevance order
        """
        results = self._call('search', self._client.search, q=query, type='artist', limit=limit)
        items = ((results or {}).get('artists') or {}).get('items') or []
        return [_artist_from_spotify(item, with_images=with_images) for item in items if item and item.get('id')]

    def find_artists(self, names: Iterable[str]) -> List[Artist]:
        """Resolve each OCR name to its top Spotify hit.

        Names are searched one after another to stay below rate limits. Names with
        no hit are skipped, as are names whose search fails, unless the failure is
        an expired or invalid token.
        """
        found: List[Artist] = []
        for name in names:
            try:
                hits = self.search_artists(name, limit=1)
            except Unauthorized:
                raise
            except Exception as e:
                logger.error(f"Error searching for artist \"{name}\": {e}")
                continue

            if hits:
                artist = hits[0]
                logger.info(f"Found: {name} -> {artist.name} (ID: {artist.id})")
                found.append(Artist(id=artist.id, name=artist.name, uri=artist.uri, search_query=name))
            else:
                logger.info(f"Not found: {name}")

        return found

    def artist_alternatives(self, name: str) -> List[Artist]:
        """Return several candidate artists for a name, including images for display."""
        return self.search_artists(name, limit=ALTERNATIVES_LIMIT, with_images=True)

    def autocomplete_artists(self, query: Optional[str]) -> List[Artist]:
        if not query or len(query.strip()) < AUTOCOMPLETE_MIN_QUERY:
            return []
        return self.search_artists(query, limit=AUTOCOMPLETE_LIMIT)

    def page_fetcher_for_user_playlists(self, user_id: str):
        def fetch(offset: int, limit: int):
            return self._call('user_playlists', self._client.user_playlists,
                              user_id, limit=limit, offset=offset)
        return fetch

    def page_fetcher_for_playlist_tracks(self, playlist_id: str):
        def fetch(offset: int, limit: int):
            return self._call('playlist_items', self._client.playlist_items,
                              playlist_id, limit=limit, offset=offset,
                              additional_types=('track',))
        return fetch

    def list_user_playlists(self) -> List[Playlist]:
        """List every playlist visible in the current user's library."""
        user_id = self.current_user().get('id')
        if not user_id:
            raise ProviderError("Could not retrieve Spotify user ID")

        raw = self._fetch_all(self.page_fetcher_for_user_playlists(user_id))
        playlists = []
        for item in raw:
            if not item or not item.get('id'):
                continue
            owner = item.get('owner') or {}
            playlists.append(Playlist(
                id=item['id'],
                name=item.get('name', ''),
                owner=owner.get('display_name') or owner.get('id', ''),
                track_count=(item.get('tracks') or {}).get('total', 0),
            ))
        logger.info(f"Found {len(playlists)} playlists")
        return playlists

    def list_playlist_tracks(self, playlist_id: str) -> List[Dict[str, Any]]:
        """Return raw playlist track items (`{'track': {...}}`) in playlist order."""
        return self._fetch_all(self.page_fetcher_for_playlist_tracks(playlist_id))

    def artist_top_tracks(self, artist_id: str, market: str = DEFAULT_MARKET) -> List[Dict[str, Any]]:
        result = self._call('artist_top_tracks', self._client.artist_top_tracks, artist_id, country=market)
        return (result or {}).get('tracks') or []

    def create_playlist(self, name: str, description: str = '', public: bool = True) -> Dict[str, Any]:
        """Create a playlist owned by the current user."""
        user_id = self.current_user().get('id')
        if not user_id:
            raise ProviderError("Could not retrieve Spotify user ID")
        logger.info(f"Creating playlist \"{name}\" for user {user_id}")
        return self._call('user_playlist_create', self._client.user_playlist_create,
                          user_id, name, public=public, description=description)

    def add_tracks(self, playlist_id: str, track_uris: List[str]) -> int:
        """Add tracks in batches of 100. Returns the number of URIs sent."""
        added = 0
        for i in range(0, len(track_uris), ADD_TRACKS_BATCH_SIZE):
            batch = track_uris[i:i + ADD_TRACKS_BATCH_SIZE]
            self._call('playlist_add_items', self._client.playlist_add_items, playlist_id, batch)
            added += len(batch)
        return added

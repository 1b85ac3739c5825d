import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import Mock

import pytest
import requests
from spotipy.exceptions import SpotifyException

from festival_sync.domain.entities import Artist
from festival_sync.domain.errors import (
    Forbidden, ProviderError, RateLimited, Unauthorized
)
from festival_sync.infrastructure.providers.spotify import SpotifyCatalog, translate_error


def spotify_error(status, headers=None):
    return SpotifyException(status, -1, f"HTTP {status}", headers=headers)


def search_result(*artists):
    return {'artists': {'items': [
        {'id': aid, 'name': name, 'uri': f'spotify:artist:{aid}',
         'images': [{'url': f'https://img/{aid}', 'height': 64, 'width': 64}]}
        for aid, name in artists
    ]}}


class TestTranslateError:
    """Tests for mapping spotipy errors onto domain errors."""

    def test_unauthorized(self):
        assert isinstance(translate_error(spotify_error(401)), Unauthorized)

    def test_forbidden(self):
        assert isinstance(translate_error(spotify_error(403)), Forbidden)

    def test_rate_limited_keeps_retry_after(self):
        error = translate_error(spotify_error(429, headers={'Retry-After': '7'}))
        assert isinstance(error, RateLimited)
        assert error.status_code == 429
        assert error.retry_after == '7'

    def test_other_status(self):
        error = translate_error(spotify_error(502))
        assert type(error) is ProviderError
        assert error.status_code == 502

    def test_transport_error(self):
        error = translate_error(requests.exceptions.ConnectionError("reset"))
        assert type(error) is ProviderError
        assert error.status_code is None

    def test_unrelated_error_passes_through(self):
        original = KeyError('x')
        assert translate_error(original) is original


class TestSpotifyCatalog:
    """Contract tests for the Spotify catalog adapter."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = Mock()
        self.client.current_user.return_value = {'id': 'user_1', 'country': 'DE'}
        self.sleep = Mock()
        self.catalog = SpotifyCatalog("test_access_token", client=self.client, sleep=self.sleep)

    def test_user_market(self):
        assert self.catalog.user_market() == 'DE'

    def test_user_market_defaults_to_us(self):
        self.client.current_user.side_effect = spotify_error(500)
        assert self.catalog.user_market() == 'US'

    def test_user_market_without_country(self):
        self.client.current_user.return_value = {'id': 'user_1'}
        assert self.catalog.user_market() == 'US'

    def test_find_artists_takes_top_hit(self):
        self.client.search.side_effect = [
            search_result(('id1', 'Daft Punk'), ('id9', 'Daft Punk Tribute')),
            search_result(),
            search_result(('id3', 'Air')),
        ]

        found = self.catalog.find_artists(["DAFT PUNK", "NOBODY", "AIR"])

        assert found == [
            Artist(id='id1', name='Daft Punk', uri='spotify:artist:id1', search_query='DAFT PUNK'),
            Artist(id='id3', name='Air', uri='spotify:artist:id3', search_query='AIR'),
        ]
        self.client.search.assert_any_call(q="DAFT PUNK", type='artist', limit=1)

    def test_find_artists_skips_failed_search(self):
        self.client.search.side_effect = [spotify_error(500), search_result(('id3', 'Air'))]
        found = self.catalog.find_artists(["BROKEN", "AIR"])
        assert [a.id for a in found] == ['id3']

    def test_find_artists_aborts_on_unauthorized(self):
        self.client.search.side_effect = spotify_error(401)
        with pytest.raises(Unauthorized):
            self.catalog.find_artists(["A", "B"])
        assert self.client.search.call_count == 1

    def test_artist_alternatives_include_images(self):
        self.client.search.return_value = search_result(('id1', 'One'), ('id2', 'Two'))

        alternatives = self.catalog.artist_alternatives("one")

        self.client.search.assert_called_once_with(q="one", type='artist', limit=5)
        assert alternatives[0].images == [{'url': 'https://img/id1', 'height': 64, 'width': 64}]

    @pytest.mark.parametrize("query", [None, "", "a", " b "])
    def test_autocomplete_short_query(self, query):
        assert self.catalog.autocomplete_artists(query) == []
        self.client.search.assert_not_called()

    def test_autocomplete(self):
        self.client.search.return_value = search_result(('id1', 'Moderat'))
        suggestions = self.catalog.autocomplete_artists("mod")
        self.client.search.assert_called_once_with(q="mod", type='artist', limit=5)
        assert suggestions[0].name == 'Moderat'
        assert suggestions[0].images == []

    def test_list_user_playlists_paginates(self):
        first = [{'id': f'p{i}', 'name': f'List {i}', 'owner': {'display_name': 'Me'},
                  'tracks': {'total': i}} for i in range(50)]
        second = [{'id': 'p50', 'name': 'Last', 'owner': {'id': 'someone'}, 'tracks': {'total': 3}}]
        self.client.user_playlists.side_effect = [
            {'items': first, 'total': 51},
            {'items': second, 'total': 51},
        ]

        playlists = self.catalog.list_user_playlists()

        assert len(playlists) == 51
        assert playlists[-1].owner == 'someone'
        assert playlists[-1].track_count == 3
        self.client.user_playlists.assert_any_call('user_1', limit=50, offset=50)

    def test_list_user_playlists_retries_rate_limit(self):
        self.client.user_playlists.side_effect = [
            spotify_error(429, headers={'Retry-After': '2'}),
            {'items': [{'id': 'p1', 'name': 'One', 'owner': {'id': 'me'}, 'tracks': {'total': 1}}],
             'total': 1},
        ]

        playlists = self.catalog.list_user_playlists()

        assert [p.id for p in playlists] == ['p1']
        self.sleep.assert_called_once_with(pytest.approx(2.1))

    def test_list_user_playlists_requires_user_id(self):
        self.client.current_user.return_value = {}
        with pytest.raises(ProviderError):
            self.catalog.list_user_playlists()

    def test_list_playlist_tracks(self):
        self.client.playlist_items.return_value = {'items': [{'track': {'artists': []}}], 'total': 1}

        items = self.catalog.list_playlist_tracks('pl')

        assert items == [{'track': {'artists': []}}]
        self.client.playlist_items.assert_called_once_with(
            'pl', limit=50, offset=0, additional_types=('track',)
        )

    def test_list_playlist_tracks_not_found(self):
        self.client.playlist_items.side_effect = spotify_error(404)
        with pytest.raises(ProviderError) as exc_info:
            self.catalog.list_playlist_tracks('missing')
        assert exc_info.value.status_code == 404

    def test_artist_top_tracks(self):
        self.client.artist_top_tracks.return_value = {'tracks': [{'uri': 't1'}]}
        assert self.catalog.artist_top_tracks('a1', 'FR') == [{'uri': 't1'}]
        self.client.artist_top_tracks.assert_called_once_with('a1', country='FR')

    def test_create_playlist(self):
        self.client.user_playlist_create.return_value = {'id': 'new'}

        result = self.catalog.create_playlist("Fest", description="desc")

        assert result == {'id': 'new'}
        self.client.user_playlist_create.assert_called_once_with(
            'user_1', "Fest", public=True, description="desc"
        )

    def test_create_playlist_forbidden(self):
        self.client.user_playlist_create.side_effect = spotify_error(403)
        with pytest.raises(Forbidden):
            self.catalog.create_playlist("Fest")

    def test_add_tracks_in_batches(self):
        uris = [f'spotify:track:{i}' for i in range(250)]

        added = self.catalog.add_tracks('pl', uris)

        assert added == 250
        batches = [c.args[1] for c in self.client.playlist_add_items.call_args_list]
        assert [len(b) for b in batches] == [100, 100, 50]
        assert batches[0][0] == 'spotify:track:0'


PLAYLIST_ID = "37i9dQZF1DXcBWIGoYBM5M"


def stub_handler(status, body, headers=None):
    """Request handler class answering every GET with the same canned response."""

    class Handler(BaseHTTPRequestHandler):
        seen = []

        def do_GET(self):
            Handler.seen.append((self.path, self.headers.get('Authorization')))
            payload = json.dumps(body).encode()
            self.send_response(status)
            self.send_header('Content-Type', 'application/json')
            self.send_header('Content-Length', str(len(payload)))
            for name, value in (headers or {}).items():
                self.send_header(name, value)
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format, *args):
            pass

    return Handler


class TestSpotifyCatalogOverHTTP:
    """Tests running the real spotipy client against a local HTTP server."""

    def setup_method(self):
        """Set up test fixtures."""
        self.sleep = Mock()
        self.server = None

    def teardown_method(self):
        """Clean up test fixtures."""
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()

    def serve(self, status, body, headers=None):
        handler = stub_handler(status, body, headers)
        self.server = ThreadingHTTPServer(('127.0.0.1', 0), handler)
        threading.Thread(target=self.server.serve_forever, daemon=True).start()

        catalog = SpotifyCatalog("tok_http", sleep=self.sleep, requests_timeout=5)
        catalog._client.prefix = f"http://127.0.0.1:{self.server.server_address[1]}/"
        return catalog, handler.seen

    def test_success(self):
        body = {'items': [{'track': {'id': 't1'}}], 'total': 1}
        catalog, seen = self.serve(200, body)

        assert catalog.list_playlist_tracks(PLAYLIST_ID) == [{'track': {'id': 't1'}}]
        assert len(seen) == 1
        assert seen[0][0].startswith(f'/playlists/{PLAYLIST_ID}/')
        assert seen[0][1] == 'Bearer tok_http'

    def test_server_error_is_not_retried(self):
        catalog, seen = self.serve(500, {'error': {'status': 500, 'message': 'Server error'}})

        with pytest.raises(ProviderError) as exc_info:
            catalog.list_playlist_tracks(PLAYLIST_ID)

        assert not isinstance(exc_info.value, RateLimited)
        assert exc_info.value.status_code == 500
        assert len(seen) == 1
        self.sleep.assert_not_called()

    def test_rate_limit_keeps_retry_after_header(self):
        catalog, seen = self.serve(429, {'error': {'status': 429, 'message': 'API rate limit exceeded'}},
                                   headers={'Retry-After': '7'})

        with pytest.raises(RateLimited) as exc_info:
            catalog.list_playlist_tracks(PLAYLIST_ID)

        assert exc_info.value.retry_after == '7'
        assert len(seen) == 3
        waits = [c.args[0] for c in self.sleep.call_args_list]
        assert waits == pytest.approx([7.1, 7.1])

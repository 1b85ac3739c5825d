import os
import logging
import secrets
import uuid
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from cachelib.file import FileSystemCache
from flask import Flask, g, jsonify, redirect, request, session
from flask_session import Session
from spotipy.cache_handler import MemoryCacheHandler
from spotipy.oauth2 import SpotifyOAuth

from festival_sync.application.comparison import compare_selected_playlists
from festival_sync.application.flow import (
    AUTH_REQUIRED_STEPS, STEPS, FlowState, get_active_index, get_allowed_max_step_index
)
from festival_sync.application.playlist_builder import build_playlist
from festival_sync.crosscutting.config import ConfigError, ConfigManager, get_config_manager
from festival_sync.crosscutting.logging import (
    CorrelationContext, log_candidates_extracted, log_error, request_id_var
)
from festival_sync.domain.candidates import extract_candidates
from festival_sync.domain.entities import Artist
from festival_sync.domain.errors import (
    Forbidden, InvalidImage, OcrConfigurationError, OcrError, Unauthorized
)
from festival_sync.domain.ports import TextDetector
from festival_sync.infrastructure.providers.spotify import SpotifyCatalog
from festival_sync.infrastructure.providers.vision import VisionTextDetector, decode_image

TOKEN_KEY = 'spotify_token'
STATE_KEY = 'oauth_state'
FLOW_KEY = 'flow'

SESSION_LIFETIME_SECONDS = 24 * 3600
SESSION_STORE_THRESHOLD = 1000

TOKEN_EXPIRED_MESSAGE = 'Spotify token expired or invalid.'
VISION_AUTH_MESSAGE = (
    'Server configuration error: Could not authenticate with Google Cloud Vision API. '
    'Check credentials.'
)


class HTTPServer:
    """HTTP server for Festival Sync: OAuth, OCR, Spotify lookups and flow state."""

    def __init__(self, host: str = 'localhost', port: int = 3000, debug: bool = False,
                 config: Optional[ConfigManager] = None,
                 catalog_factory: Optional[Callable[[str], Any]] = None,
                 text_detector: Optional[TextDetector] = None,
                 oauth_factory: Optional[Callable[[], Any]] = None):
        """Initialize HTTP server.

        Args:
            host: Interface to bind
            port: Port to listen on
            debug: Run Flask in debug mode
            config: Configuration source, the global manager by default
            catalog_factory: Builds a Spotify catalog from an access token
            text_detector: OCR service, Google Cloud Vision by default
            oauth_factory: Builds the spotipy OAuth manager
        """
        self.host = host
        self.port = port
        self.debug = debug
        self.config = config or get_config_manager()
        self.app = Flask(__name__)
        self.app.secret_key = self.config.get_flask_secret_key()
        self._setup_session()
        self.logger = logging.getLogger(__name__)

        self.version = "0.1.0"
        self.commit = os.getenv('GIT_COMMIT', 'unknown')

        self.catalog_factory = catalog_factory or (lambda token: SpotifyCatalog(token))
        self.text_detector = text_detector or VisionTextDetector(
            credentials_json=self.config.get_vision_credentials_json(),
            key_file=self.config.get_vision_key_file(),
        )
        self.oauth_factory = oauth_factory or self._build_oauth
        self.noise_rule = self.config.get_noise_rule()

        self._setup_request_context()
        self._setup_routes()

    def _build_oauth(self) -> SpotifyOAuth:
        client = self.config.get_spotify_client_config()
        return SpotifyOAuth(
            client_id=client['client_id'],
            client_secret=client['client_secret'],
            redirect_uri=client['redirect_uri'],
            scope=self.config.get_spotify_scope_string(),
            cache_handler=MemoryCacheHandler(),
            open_browser=False,
            show_dialog=True,
        )

    def _setup_session(self) -> None:
        """Keep session data (token, flow state) server-side; the cookie only carries the session id."""
        self.app.config.update(
            SESSION_TYPE='cachelib',
            SESSION_CACHELIB=FileSystemCache(str(self.config.session_dir), threshold=SESSION_STORE_THRESHOLD),
            SESSION_PERMANENT=True,
            PERMANENT_SESSION_LIFETIME=SESSION_LIFETIME_SECONDS,
            SESSION_COOKIE_SAMESITE='Lax',
            SESSION_COOKIE_HTTPONLY=True,
        )
        Session(self.app)

    def _setup_request_context(self) -> None:
        @self.app.before_request
        def bind_request_id():
            g.request_id = request.headers.get('X-Request-ID') or uuid.uuid4().hex[:12]
            g.request_id_token = request_id_var.set(g.request_id)

        @self.app.teardown_request
        def unbind_request_id(exc=None):
            token = g.pop('request_id_token', None)
            if token is not None:
                request_id_var.reset(token)

    # Session helpers

    def _load_flow(self) -> FlowState:
        return FlowState.from_dict(session.get(FLOW_KEY))

    def _save_flow(self, state: FlowState) -> None:
        session[FLOW_KEY] = state.to_dict()

    def _current_access_token(self) -> Optional[str]:
        """Access token for this session, refreshed when expired. None if unavailable."""
        token_info = session.get(TOKEN_KEY)
        if not token_info or not token_info.get('access_token'):
            return None

        if token_info.get('expires_at') is not None and SpotifyOAuth.is_token_expired(token_info):
            refresh_token = token_info.get('refresh_token')
            if not refresh_token:
                session.pop(TOKEN_KEY, None)
                return None
            try:
                self.logger.info("Access token expired, refreshing...")
                refreshed = self.oauth_factory().refresh_access_token(refresh_token)
            except Exception as e:
                self.logger.error(f"Failed to refresh Spotify token: {e}")
                session.pop(TOKEN_KEY, None)
                return None
            # Spotify may omit the refresh token on refresh
            refreshed.setdefault('refresh_token', refresh_token)
            session[TOKEN_KEY] = self._session_token(refreshed)
            token_info = session[TOKEN_KEY]

        return token_info['access_token']

    @staticmethod
    def _session_token(token_info: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'access_token': token_info.get('access_token'),
            'refresh_token': token_info.get('refresh_token'),
            'expires_at': token_info.get('expires_at'),
            'scope': token_info.get('scope'),
        }

    def _spotify_route(self, failure_message: str, forbidden_message: Optional[str] = None):
        """Wrap a view needing a Spotify catalog with auth and error translation."""
        def decorator(view):
            @wraps(view)
            def wrapper(*args, **kwargs):
                access_token = self._current_access_token()
                if not access_token:
                    return jsonify({'error': 'Unauthorized'}), 401

                try:
                    catalog = self.catalog_factory(access_token)
                    return view(catalog, *args, **kwargs)
                except Unauthorized:
                    return jsonify({'error': TOKEN_EXPIRED_MESSAGE}), 401
                except Forbidden as e:
                    if forbidden_message:
                        return jsonify({'error': forbidden_message}), 403
                    log_error(self.logger, failure_message, e, path=request.path)
                    return jsonify({'error': failure_message}), 500
                except Exception as e:
                    log_error(self.logger, failure_message, e, path=request.path)
                    return jsonify({'error': failure_message}), 500
            return wrapper
        return decorator

    def _setup_routes(self) -> None:
        """Setup Flask routes."""

        @self.app.route('/health', methods=['GET'])
        def health_check():
            """Health check endpoint."""
            return jsonify({
                'status': 'healthy',
                'version': self.version,
                'commit': self.commit,
                'timestamp': datetime.now().isoformat()
            }), 200

        @self.app.route('/', methods=['GET'])
        def root():
            """Root endpoint with basic info."""
            return jsonify({
                'service': 'Festival Sync HTTP Interface',
                'version': self.version,
                'authenticated': bool(session.get(TOKEN_KEY)),
                'endpoints': {
                    'health': '/health',
                    'spotify_auth': '/auth/spotify',
                    'oauth_callback': '/callback',
                    'flow': '/api/flow',
                    'ocr': '/api/ocr',
                    'steps': [step.path for step in STEPS],
                }
            }), 200

        # OAuth

        @self.app.route('/auth/spotify', methods=['GET'])
        def spotify_auth():
            """Initiate Spotify OAuth flow."""
            try:
                oauth = self.oauth_factory()
            except ConfigError as e:
                self.logger.error(f"Spotify auth error: {e}")
                return jsonify({'error': 'Spotify client not configured', 'details': str(e)}), 500

            state = secrets.token_urlsafe(16)
            session[STATE_KEY] = state
            return redirect(oauth.get_authorize_url(state=state))

        @self.app.route('/callback', methods=['GET'])
        def oauth_callback():
            """OAuth callback endpoint for Spotify."""
            error = request.args.get('error')
            if error:
                self.logger.error(f"OAuth error: {error}")
                return jsonify({'error': 'OAuth authorization failed', 'details': error}), 400

            code = request.args.get('code')
            if not code:
                return jsonify({'error': 'Missing authorization code'}), 400

            expected_state = session.pop(STATE_KEY, None)
            if not expected_state or request.args.get('state') != expected_state:
                self.logger.warning("OAuth state mismatch")
                return jsonify({'error': 'Invalid OAuth state'}), 400

            try:
                oauth = self.oauth_factory()
            except ConfigError as e:
                self.logger.error(f"Spotify credentials missing for callback: {e}")
                return jsonify({'error': 'Server configuration error.'}), 500

            try:
                access_token = oauth.get_access_token(code, as_dict=False, check_cache=False)
                # read the raw cache, SpotifyOAuth.get_cached_token drops tokens with partial scopes
                token_info = oauth.cache_handler.get_cached_token() or {'access_token': access_token}
            except Exception as e:
                log_error(self.logger, 'Error getting tokens from Spotify', e)
                return jsonify({'error': 'Failed to exchange authorization code for tokens.'}), 500

            granted = token_info.get('scope')
            if granted and not self.config.validate_spotify_scopes(granted):
                missing = self.config.get_missing_spotify_scopes(granted)
                self.logger.warning(f"Spotify token is missing scopes: {', '.join(missing)}")

            session[TOKEN_KEY] = self._session_token(token_info)
            self.logger.info("Spotify OAuth tokens stored in session")
            return redirect('/upload')

        @self.app.route('/auth/logout', methods=['POST'])
        def logout():
            session.clear()
            return jsonify({'status': 'logged_out'}), 200

        # Step-gated navigation

        def make_step_view(index: int, step):
            def step_view():
                if step.key in AUTH_REQUIRED_STEPS and not session.get(TOKEN_KEY):
                    return redirect('/')

                state = self._load_flow()
                allowed = get_allowed_max_step_index(state)
                if index > allowed:
                    return redirect(STEPS[allowed].path)

                with CorrelationContext(step=step.key):
                    self.logger.debug(f"Rendering step {step.key}")
                return jsonify({
                    'step': step.key,
                    'label': step.label,
                    'activeIndex': get_active_index(request.path),
                    'steps': [{'key': s.key, 'label': s.label, 'path': s.path} for s in STEPS],
                    'allowedMaxStepIndex': allowed,
                    'state': state.to_dict(),
                }), 200
            return step_view

        for index, step in enumerate(STEPS):
            self.app.add_url_rule(step.path, endpoint=f'step_{step.key}',
                                  view_func=make_step_view(index, step), methods=['GET'])

        # Flow state

        @self.app.route('/api/flow', methods=['GET'])
        def get_flow():
            state = self._load_flow()
            return jsonify({
                'state': state.to_dict(),
                'allowedMaxStepIndex': get_allowed_max_step_index(state),
            }), 200

        @self.app.route('/api/flow/reset', methods=['POST'])
        def reset_flow():
            state = self._load_flow()
            state.reset()
            self._save_flow(state)
            return jsonify({
                'state': state.to_dict(),
                'allowedMaxStepIndex': get_allowed_max_step_index(state),
            }), 200

        @self.app.route('/api/flow/candidates', methods=['PUT'])
        def update_candidate():
            body = request.get_json(silent=True) or {}
            index = body.get('index')
            value = body.get('value')
            if not isinstance(index, int) or isinstance(index, bool) or not isinstance(value, str):
                return jsonify({'error': 'index (integer) and value (string) are required.'}), 400

            state = self._load_flow()
            try:
                state.update_candidate_name(index, value)
            except IndexError as e:
                return jsonify({'error': str(e)}), 400
            self._save_flow(state)
            return jsonify({'candidateNames': state.candidate_names}), 200

        @self.app.route('/api/flow/mappings', methods=['PUT'])
        def update_mapping():
            body = request.get_json(silent=True) or {}
            original_name = body.get('originalName')
            artist_data = body.get('artist')
            if not isinstance(original_name, str) or not original_name.strip():
                return jsonify({'error': 'originalName must be a non-empty string.'}), 400
            if artist_data is not None and not (isinstance(artist_data, dict) and artist_data.get('id')):
                return jsonify({'error': 'artist must be null or an object with an id.'}), 400

            state = self._load_flow()
            state.set_artist_mapping(original_name, Artist.from_dict(artist_data) if artist_data else None)
            self._save_flow(state)
            return jsonify({
                'artistMappings': state.to_dict()['review']['artistMappings'],
                'allowedMaxStepIndex': get_allowed_max_step_index(state),
            }), 200

        # OCR

        @self.app.route('/api/ocr', methods=['POST'])
        def ocr():
            body = request.get_json(silent=True) or {}
            image = body.get('image')
            if not image:
                return jsonify({'error': 'No image data provided.'}), 400

            try:
                image_bytes = decode_image(image)
            except InvalidImage as e:
                return jsonify({'error': str(e)}), 400

            try:
                text = self.text_detector.detect_text(image_bytes)
            except OcrConfigurationError as e:
                log_error(self.logger, 'Google Cloud Vision authentication failed', e)
                return jsonify({'error': VISION_AUTH_MESSAGE}), 500
            except OcrError as e:
                log_error(self.logger, 'Google Cloud Vision API error', e)
                return jsonify({'error': str(e)}), 500

            candidates = extract_candidates(text, self.noise_rule)
            log_candidates_extracted(self.logger, len(text.splitlines()), len(candidates))

            state = self._load_flow()
            state.set_ocr_result(text, candidates)
            state.clear_artist_mappings()
            self._save_flow(state)

            response: Dict[str, Any] = {'text': text, 'candidates': candidates}
            if not text:
                response['message'] = 'No text detected.'
            return jsonify(response), 200

        # Spotify

        @self.app.route('/api/spotify/find-artists', methods=['POST'])
        @self._spotify_route('Failed to process artist search request.')
        def find_artists(catalog):
            body = request.get_json(silent=True) or {}
            names = body.get('artists')
            if not names or not isinstance(names, list) or not all(isinstance(n, str) for n in names):
                return jsonify({'error': 'No artist names provided.'}), 400

            self.logger.info(f"Searching for {len(names)} artists on Spotify...")
            found = catalog.find_artists(names)
            self.logger.info(f"Found {len(found)} Spotify artists")

            state = self._load_flow()
            for artist in found:
                state.set_artist_mapping(artist.search_query, artist)
            self._save_flow(state)

            return jsonify({'foundArtists': [a.to_dict() for a in found]}), 200

        @self.app.route('/api/spotify/artist-alternatives', methods=['POST'])
        @self._spotify_route('Failed to process artist alternatives request.')
        def artist_alternatives(catalog):
            body = request.get_json(silent=True) or {}
            name = body.get('artistName')
            if not isinstance(name, str) or not name.strip():
                return jsonify({'error': 'Artist name must be provided and be a non-empty string.'}), 400

            alternatives = catalog.artist_alternatives(name)
            self.logger.info(f"Found {len(alternatives)} alternatives for \"{name}\"")
            return jsonify({'alternatives': [a.to_dict() for a in alternatives]}), 200

        @self.app.route('/api/spotify/autocomplete-artists', methods=['GET'])
        @self._spotify_route('Failed to fetch artist suggestions.')
        def autocomplete_artists(catalog):
            suggestions = catalog.autocomplete_artists(request.args.get('query'))
            return jsonify({'suggestions': [a.to_dict() for a in suggestions]}), 200

        @self.app.route('/api/spotify/compare-artists', methods=['POST'])
        @self._spotify_route('Failed to fetch user playlists.')
        def list_playlists(catalog):
            playlists = catalog.list_user_playlists()
            return jsonify({'playlists': [p.to_dict() for p in playlists]}), 200

        @self.app.route('/api/spotify/compare-selected-playlists', methods=['POST'])
        @self._spotify_route('Failed to process artist comparison request.')
        def compare_playlists(catalog):
            body = request.get_json(silent=True) or {}
            state = self._load_flow()

            festival_artists = _parse_artists(body.get('festivalArtists'))
            if festival_artists is None:
                festival_artists = state.mapped_artists()
            if not festival_artists:
                return jsonify({'error': 'No festival artist IDs provided.'}), 400

            playlist_ids = body.get('selectedPlaylistIds', state.selected_playlist_ids)
            if (not playlist_ids or not isinstance(playlist_ids, list)
                    or not all(isinstance(p, str) and p for p in playlist_ids)):
                return jsonify({'error': 'No playlist IDs provided.'}), 400

            matched = compare_selected_playlists(catalog, festival_artists, playlist_ids)

            state.set_selected_playlists(playlist_ids)
            state.set_matched_artists(matched)
            self._save_flow(state)
            return jsonify({'matchedArtists': [a.to_dict() for a in matched]}), 200

        @self.app.route('/api/spotify/create-playlist', methods=['POST'])
        @self._spotify_route('Failed to create playlist.',
                             forbidden_message='Missing permissions (scope) to create/modify playlists.')
        def create_playlist(catalog):
            body = request.get_json(silent=True) or {}
            state = self._load_flow()

            artists = _parse_artists(body.get('artists'))
            if artists is None:
                artists = state.matched_artists
            if not artists:
                return jsonify({'error': 'No artists provided to create playlist.'}), 400

            playlist_name = body.get('playlistName')
            created = build_playlist(catalog, artists, playlist_name=playlist_name)

            if playlist_name:
                state.set_playlist_name(playlist_name)
            state.set_created_playlist(created.id, created.url)
            self._save_flow(state)
            return jsonify({
                'message': 'Playlist created successfully!',
                'playlistUrl': created.url,
                'playlistId': created.id,
                'tracksAdded': created.tracks_added,
            }), 200

    def run(self) -> None:
        """Run the HTTP server."""
        self.logger.info(f"Starting Festival Sync HTTP server on {self.host}:{self.port}")
        self.app.run(
            host=self.host,
            port=self.port,
            debug=self.debug
        )


def _parse_artists(data: Any) -> Optional[List[Artist]]:
    """Artists from a JSON list of `{id, name, uri}`; None when the field is absent."""
    if data is None:
        return None
    if not isinstance(data, list):
        return []
    return [Artist.from_dict(a) for a in data if isinstance(a, dict) and a.get('id')]


def create_app(**kwargs) -> Flask:
    """Create Flask app (used by tests and WSGI servers)."""
    server = HTTPServer(**kwargs)
    return server.app

import os
import json
import secrets
from typing import Dict, Any, Optional
from pathlib import Path

from festival_sync.domain.candidates import NoiseRule, DEFAULT_NOISE_KEYWORDS


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigManager:
    """Manages application secrets and configuration.

    Values come from the process environment first, then from the `.env` file in
    the config directory.
    """

    def __init__(self, config_dir: Optional[str] = None):
        """Initialize config manager."""
        self.config_dir = Path(config_dir) if config_dir else Path.home() / '.festival-sync'
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.env_file = self.config_dir / '.env'
        self.noise_file = self.config_dir / 'noise.json'
        self.session_dir = self.config_dir / 'sessions'
        self._fallback_secret_key: Optional[str] = None

    def get_spotify_scopes(self) -> list:
        """Get Spotify scopes needed by the festival flow."""
        return [
            'user-read-private',            # Market for top tracks
            'user-read-email',
            'playlist-read-private',        # Read private playlists
            'playlist-read-collaborative',  # Read collaborative playlists
            'playlist-modify-public',       # Create the matches playlist
        ]

    def get_spotify_scope_string(self) -> str:
        """Get Spotify scopes as space-separated string."""
        return ' '.join(self.get_spotify_scopes())

    def validate_spotify_scopes(self, scopes: str) -> bool:
        """Validate that provided scopes include all required ones."""
        provided_scopes = set(scopes.split())
        required_scopes = set(self.get_spotify_scopes())

        return required_scopes.issubset(provided_scopes)

    def get_missing_spotify_scopes(self, scopes: str) -> list:
        """Get list of missing required Spotify scopes."""
        provided_scopes = set(scopes.split())
        return [s for s in self.get_spotify_scopes() if s not in provided_scopes]

    def load_env_vars(self) -> Dict[str, str]:
        """Load environment variables from .env file."""
        env_vars = {}

        if self.env_file.exists():
            try:
                with open(self.env_file, 'r') as f:
                    for line in f:
                        line = line.strip()
                        if line and not line.startswith('#') and '=' in line:
                            key, value = line.split('=', 1)
                            env_vars[key.strip()] = value.strip().strip('"').strip("'")
            except IOError as e:
                raise ConfigError(f"Failed to load .env file {self.env_file}: {e}")

        return env_vars

    def get_value(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Read a setting, preferring the process environment over the .env file."""
        value = os.environ.get(key)
        if value:
            return value
        return self.load_env_vars().get(key) or default

    def get_spotify_client_config(self) -> Dict[str, str]:
        """Get Spotify client configuration."""
        client_id = self.get_value('SPOTIFY_CLIENT_ID')
        client_secret = self.get_value('SPOTIFY_CLIENT_SECRET')
        redirect_uri = self.get_value('SPOTIFY_REDIRECT_URI')

        if not client_id:
            raise ConfigError("SPOTIFY_CLIENT_ID not found in environment")
        if not client_secret:
            raise ConfigError("SPOTIFY_CLIENT_SECRET not found in environment")
        if not redirect_uri:
            raise ConfigError("SPOTIFY_REDIRECT_URI not found in environment")

        return {
            'client_id': client_id,
            'client_secret': client_secret,
            'redirect_uri': redirect_uri
        }

    def get_flask_secret_key(self) -> str:
        """Session signing key. Falls back to a random key that lives as long as this manager."""
        key = self.get_value('FLASK_SECRET_KEY')
        if key:
            return key
        if self._fallback_secret_key is None:
            self._fallback_secret_key = secrets.token_hex(32)
        return self._fallback_secret_key

    def get_vision_credentials_json(self) -> Optional[str]:
        """Inline service-account JSON for Google Cloud Vision."""
        return self.get_value('GOOGLE_APPLICATION_CREDENTIALS_JSON')

    def get_vision_key_file(self) -> Optional[str]:
        """Path to a service-account key file for Google Cloud Vision."""
        path = self.get_value('GOOGLE_APPLICATION_CREDENTIALS')
        return os.path.expanduser(os.path.expandvars(path)) if path else None

    def get_noise_rule(self) -> NoiseRule:
        """Noise rule for candidate extraction.

        `noise.json` in the config directory wins (a keyword list or a
        `keyword -> "exclude"` mapping), then the comma-separated
        FESTIVAL_SYNC_NOISE_KEYWORDS setting, then the built-in keywords.
        """
        if self.noise_file.exists():
            try:
                with open(self.noise_file, 'r') as f:
                    data = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                raise ConfigError(f"Failed to load noise keywords from {self.noise_file}: {e}")
            if not isinstance(data, (list, dict)):
                raise ConfigError(f"Noise keywords in {self.noise_file} must be a list or an object")
            return NoiseRule.from_config(data)

        keywords = self.get_value('FESTIVAL_SYNC_NOISE_KEYWORDS')
        if keywords:
            return NoiseRule([k for k in keywords.split(',') if k.strip()])

        return NoiseRule(DEFAULT_NOISE_KEYWORDS)

    def validate_configuration(self) -> Dict[str, bool]:
        """Validate that all required configuration is present."""
        vision_key_file = self.get_vision_key_file()
        return {
            'spotify_client_id': bool(self.get_value('SPOTIFY_CLIENT_ID')),
            'spotify_client_secret': bool(self.get_value('SPOTIFY_CLIENT_SECRET')),
            'spotify_redirect_uri': bool(self.get_value('SPOTIFY_REDIRECT_URI')),
            'flask_secret_key': bool(self.get_value('FLASK_SECRET_KEY')),
            'vision_credentials': bool(
                self.get_vision_credentials_json()
                or (vision_key_file and os.path.exists(vision_key_file))
            ),
        }

    def get_config_summary(self) -> Dict[str, Any]:
        """Get configuration summary (without sensitive data)."""
        validation = self.validate_configuration()

        return {
            'config_dir': str(self.config_dir),
            'env_file': str(self.env_file),
            'noise_file': str(self.noise_file),
            'session_dir': str(self.session_dir),
            'validation': validation,
            'spotify_scopes': self.get_spotify_scopes(),
            'noise_keywords': list(self.get_noise_rule().keywords),
        }


# Global instance, created on first use
config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get global config manager instance."""
    global config_manager
    if config_manager is None:
        config_manager = ConfigManager(os.environ.get('FESTIVAL_SYNC_CONFIG_DIR'))
    return config_manager


def setup_config(config_dir: Optional[str] = None) -> ConfigManager:
    """Setup configuration with custom directory."""
    global config_manager
    config_manager = ConfigManager(config_dir)
    return config_manager

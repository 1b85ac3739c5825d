import base64
import binascii
import json
import logging
import os
from typing import Any, Optional

from google.api_core import exceptions as google_exceptions
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import vision
from google.oauth2 import service_account

from festival_sync.domain.errors import InvalidImage, OcrConfigurationError, OcrError

logger = logging.getLogger(__name__)

LOCAL_KEY_FILE = 'google-cloud-key.json'


def decode_image(data: str) -> bytes:
    """Decode a base64 image, accepting a bare payload or a `data:` URL."""
    if not data or not isinstance(data, str):
        raise InvalidImage("No image data provided")
    payload = data.split(',', 1)[1] if data.startswith('data:') and ',' in data else data
    try:
        decoded = base64.b64decode(payload.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidImage(f"Image is not valid base64: {e}")
    if not decoded:
        raise InvalidImage("Image payload is empty")
    return decoded


def build_vision_client(credentials_json: Optional[str] = None,
                        key_file: Optional[str] = None,
                        cwd: Optional[str] = None) -> Any:
    """Create an ImageAnnotatorClient from the first available credential source.

    Order: inline service-account JSON, key file path, `google-cloud-key.json` in the
    working directory, then application default credentials.
    """
    if credentials_json:
        try:
            info = json.loads(credentials_json)
            if isinstance(info.get('private_key'), str):
                info['private_key'] = info['private_key'].replace('\\n', '\n')
            credentials = service_account.Credentials.from_service_account_info(info)
            return vision.ImageAnnotatorClient(credentials=credentials)
        except (ValueError, KeyError, AttributeError) as e:
            logger.error(f"Failed to parse inline Google credentials JSON: {e}")

    if key_file and os.path.exists(key_file):
        return vision.ImageAnnotatorClient.from_service_account_file(key_file)

    local_key = os.path.join(cwd or os.getcwd(), LOCAL_KEY_FILE)
    if os.path.exists(local_key):
        return vision.ImageAnnotatorClient.from_service_account_file(local_key)

    try:
        return vision.ImageAnnotatorClient()
    except DefaultCredentialsError as e:
        raise OcrConfigurationError(
            "Could not authenticate with Google Cloud Vision API. Check credentials."
        ) from e


class VisionTextDetector:
    """Google Cloud Vision TEXT_DETECTION adapter."""

    def __init__(self, client: Optional[Any] = None,
                 credentials_json: Optional[str] = None,
                 key_file: Optional[str] = None):
        self._client = client
        self._credentials_json = credentials_json
        self._key_file = key_file

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = build_vision_client(self._credentials_json, self._key_file)
        return self._client

    def detect_text(self, image_bytes: bytes) -> str:
        """Return the full text block detected in the image, or an empty string."""
        try:
            logger.info("Sending request to Google Cloud Vision API...")
            response = self.client.text_detection(image=vision.Image(content=image_bytes))
        except (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied,
                DefaultCredentialsError) as e:
            raise OcrConfigurationError(
                "Could not authenticate with Google Cloud Vision API. Check credentials."
            ) from e
        except google_exceptions.GoogleAPICallError as e:
            raise OcrError(f"Failed to process image with Google Cloud Vision API. {e}") from e

        error = getattr(response, 'error', None)
        if error is not None and getattr(error, 'message', ''):
            raise OcrError(f"Failed to process image with Google Cloud Vision API. {error.message}")

        annotations = response.text_annotations
        # First annotation holds the full text block
        if not annotations:
            logger.info("No text detected by Vision API")
            return ''
        return annotations[0].description or ''

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from festival_sync.application.playlist_builder import DEFAULT_PLAYLIST_NAME
from festival_sync.domain.entities import Artist


@dataclass(frozen=True)
class Step:
    key: str
    label: str
    path: str


STEPS = (
    Step('upload', 'Upload', '/upload'),
    Step('review', 'Review', '/review'),
    Step('compare', 'Compare', '/compare'),
    Step('results', 'Results', '/results'),
    Step('create', 'Create', '/create'),
)

# Steps that talk to Spotify on the user's behalf
AUTH_REQUIRED_STEPS = frozenset({'compare', 'results', 'create'})


@dataclass
class FlowState:
    """Per-session progress through upload -> review -> compare -> results -> create."""

    image_supplied: bool = False
    ocr_text: str = ''
    candidate_names: List[str] = field(default_factory=list)
    # OCR name -> chosen Spotify artist, None when the user cleared it
    artist_mappings: Dict[str, Optional[Artist]] = field(default_factory=dict)
    selected_playlist_ids: List[str] = field(default_factory=list)
    matched_artists: List[Artist] = field(default_factory=list)
    playlist_name: str = DEFAULT_PLAYLIST_NAME
    created_playlist_id: Optional[str] = None
    created_playlist_url: Optional[str] = None

    def set_ocr_result(self, text: str, candidate_names: List[str], image_supplied: bool = True) -> None:
        self.image_supplied = image_supplied
        self.ocr_text = text
        self.candidate_names = list(candidate_names)

    def update_candidate_name(self, index: int, value: str) -> None:
        if not 0 <= index < len(self.candidate_names):
            raise IndexError(f"Candidate index {index} out of range")
        self.candidate_names[index] = value

    def set_artist_mapping(self, original_name: str, artist: Optional[Artist]) -> None:
        self.artist_mappings[original_name] = artist

    def clear_artist_mappings(self) -> None:
        self.artist_mappings = {}

    def set_selected_playlists(self, playlist_ids: List[str]) -> None:
        # dedupe, keep order
        self.selected_playlist_ids = list(dict.fromkeys(playlist_ids))

    def set_matched_artists(self, artists: List[Artist]) -> None:
        self.matched_artists = list(artists)

    def set_playlist_name(self, name: str) -> None:
        self.playlist_name = name

    def set_created_playlist(self, playlist_id: str, url: Optional[str] = None) -> None:
        self.created_playlist_id = playlist_id
        self.created_playlist_url = url

    def reset(self) -> None:
        """Back to a fresh upload step."""
        fresh = FlowState()
        for f in fields(self):
            setattr(self, f.name, getattr(fresh, f.name))

    def mapped_artists(self) -> List[Artist]:
        return [a for a in self.artist_mappings.values() if a is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ocr': {
                'imageSupplied': self.image_supplied,
                'text': self.ocr_text,
                'candidateNames': list(self.candidate_names),
            },
            'review': {
                'artistMappings': {
                    name: (artist.to_dict() if artist else None)
                    for name, artist in self.artist_mappings.items()
                },
            },
            'compare': {'selectedPlaylistIds': list(self.selected_playlist_ids)},
            'results': {'matchedArtists': [a.to_dict() for a in self.matched_artists]},
            'create': {
                'playlistName': self.playlist_name,
                'createdPlaylistId': self.created_playlist_id,
                'createdPlaylistUrl': self.created_playlist_url,
            },
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> FlowState:
        if not data:
            return cls()
        ocr = data.get('ocr') or {}
        review = data.get('review') or {}
        compare = data.get('compare') or {}
        results = data.get('results') or {}
        create = data.get('create') or {}
        return cls(
            image_supplied=bool(ocr.get('imageSupplied')),
            ocr_text=ocr.get('text') or '',
            candidate_names=list(ocr.get('candidateNames') or []),
            artist_mappings={
                name: (Artist.from_dict(artist) if artist else None)
                for name, artist in (review.get('artistMappings') or {}).items()
            },
            selected_playlist_ids=list(compare.get('selectedPlaylistIds') or []),
            matched_artists=[Artist.from_dict(a) for a in results.get('matchedArtists') or []],
            playlist_name=create.get('playlistName') or DEFAULT_PLAYLIST_NAME,
            created_playlist_id=create.get('createdPlaylistId'),
            created_playlist_url=create.get('createdPlaylistUrl'),
        )


def get_active_index(path: Optional[str]) -> int:
    """Index of the step whose path prefixes `path`, or -1."""
    if not path:
        return -1
    for index, step in enumerate(STEPS):
        if path.startswith(step.path):
            return index
    return -1


def get_allowed_max_step_index(state: FlowState) -> int:
    """Furthest step the user may navigate to given what they have done so far."""
    allowed = 0

    has_ocr_input = state.image_supplied or bool(state.ocr_text.strip()) or bool(state.candidate_names)
    if has_ocr_input:
        allowed = 1

    if any(artist is not None for artist in state.artist_mappings.values()):
        allowed = 2

    if state.matched_artists:
        # results and create unlock together
        allowed = 4

    return allowed

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Page:
    """One bounded response from a paged remote endpoint."""

    items: List[Any]
    total: Optional[int] = None


@dataclass(frozen=True)
class Artist:
    """Domain entity representing a Spotify artist."""

    id: str
    name: str
    uri: Optional[str] = None
    images: List[Dict[str, Any]] = field(default_factory=list)
    # OCR name that produced this artist, when it came from a lookup
    search_query: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'id': self.id, 'name': self.name, 'uri': self.uri}
        if self.images:
            data['images'] = list(self.images)
        if self.search_query is not None:
            data['searchQuery'] = self.search_query
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Artist:
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            uri=data.get('uri'),
            images=list(data.get('images') or []),
            search_query=data.get('searchQuery'),
        )


@dataclass(frozen=True)
class Playlist:
    """Domain entity representing one of the user's playlists."""

    id: str
    name: str
    owner: str
    track_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'owner': self.owner,
            'trackCount': self.track_count,
        }


@dataclass(frozen=True)
class CreatedPlaylist:
    """Result of generating a playlist from matched artists."""

    id: str
    name: str
    url: Optional[str] = None
    tracks_added: int = 0

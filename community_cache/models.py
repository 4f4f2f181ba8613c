"""
Domain records and wire mapping.

Each entity kind has an explicit record type and a pure mapping
function from the gateway's wire dict to that record. The mappers
are total: a missing field never raises, it takes the documented
default instead.

Wire format (snake_case, as stored by the remote service):

    profiles:  id, name, email, business_name, sector, latitude, longitude,
               address, city, avatar_url, joined_date, status,
               training_progress, badges, role, completed_trainings
    posts:     id, author_id, content, type, likes_count, liked_by,
               image_url, created_at, comments ([{"count": n}]) or comments_count
    trainings: id, title, description, type, url, duration, author_name, created_at
    messages:  id, author_id, content, created_at, profiles ({name, avatar_url})
    comments:  id, post_id, author_id, author_name, content, created_at, profiles ({name}),
               client_ref
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

# Placeholder values applied by the mappers
DEFAULT_MEMBER_NAME = "Utilisateur"
DEFAULT_AVATAR_NAME = "User"
DEFAULT_MEMBER_STATUS = "En Formation"
DEFAULT_MEMBER_ROLE = "MEMBER"
DEFAULT_MESSAGE_AUTHOR = "Inconnu"
DEFAULT_REALTIME_AUTHOR = "Membre"
DEFAULT_COMMENT_AUTHOR = "Visiteur"

EPOCH = datetime.fromtimestamp(0, UTC)


def avatar_url(name: str | None) -> str:
    """Generated avatar URL used when a profile has no picture."""
    return f"https://ui-avatars.com/api/?name={quote(name or DEFAULT_AVATAR_NAME, safe='')}&background=random"


def parse_timestamp(value: Any) -> datetime:
    """Parse a wire timestamp into an aware UTC datetime.

    Accepts ISO 8601 strings (``Z`` suffix or offset), epoch seconds and
    datetimes. Missing or unparseable values map to the Unix epoch.
    """
    if value is None or value == "":
        return EPOCH
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, bool):
        return EPOCH
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return EPOCH
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return EPOCH


def format_timestamp(value: datetime) -> str:
    """Wire representation of a timestamp (ISO 8601, UTC)."""
    return value.astimezone(UTC).isoformat()


@dataclass
class Location:
    lat: float = 0
    lng: float = 0
    address: str = ""
    city: str = ""


@dataclass
class Member:
    """A member profile from the directory."""

    id: str
    name: str = DEFAULT_MEMBER_NAME
    email: str | None = None
    business_name: str = ""
    sector: str = ""
    location: Location = field(default_factory=Location)
    avatar: str = ""
    joined_date: datetime | None = None
    status: str = DEFAULT_MEMBER_STATUS
    training_progress: int = 0
    badges: list[str] = field(default_factory=list)
    role: str = DEFAULT_MEMBER_ROLE
    completed_trainings: list[str] = field(default_factory=list)


@dataclass
class Post:
    """An activity feed post."""

    id: str
    author_id: str | None
    content: str
    type: str | None = None
    likes: int = 0
    comments: int = 0
    created_at: datetime = EPOCH
    image: str | None = None
    liked_by: list[str] = field(default_factory=list)
    comments_list: list[Comment] = field(default_factory=list)


@dataclass
class Training:
    """A training resource."""

    id: str
    title: str
    description: str | None = None
    type: str | None = None
    url: str | None = None
    duration: str | None = None
    created_at: datetime = EPOCH
    author_name: str | None = None


@dataclass
class DiscussionMessage:
    """A message in the general discussion chat."""

    id: str
    author_id: str | None
    author_name: str
    author_avatar: str
    content: str
    created_at: datetime = EPOCH


@dataclass
class Comment:
    """A comment on a post.

    ``pending`` marks comments that only exist in the local fallback
    queue and have not been confirmed by the server.
    """

    id: str
    post_id: str
    author_name: str
    content: str
    created_at: datetime = EPOCH
    author_id: str | None = None
    pending: bool = False
    client_ref: str | None = None


def _joined(wire: dict[str, Any], key: str = "profiles") -> dict[str, Any]:
    joined = wire.get(key)
    if isinstance(joined, list):
        joined = joined[0] if joined else None
    return joined if isinstance(joined, dict) else {}


def member_from_wire(wire: dict[str, Any]) -> Member:
    """Map a ``profiles`` row to a Member."""
    joined_raw = wire.get("joined_date")
    return Member(
        id=str(wire.get("id", "")),
        name=wire.get("name") or DEFAULT_MEMBER_NAME,
        email=wire.get("email"),
        business_name=wire.get("business_name") or "",
        sector=wire.get("sector") or "",
        location=Location(
            lat=wire.get("latitude") or 0,
            lng=wire.get("longitude") or 0,
            address=wire.get("address") or "",
            city=wire.get("city") or "",
        ),
        avatar=wire.get("avatar_url") or avatar_url(wire.get("name")),
        joined_date=parse_timestamp(joined_raw) if joined_raw else None,
        status=wire.get("status") or DEFAULT_MEMBER_STATUS,
        training_progress=wire.get("training_progress") or 0,
        badges=list(wire.get("badges") or []),
        role=wire.get("role") or DEFAULT_MEMBER_ROLE,
        completed_trainings=list(wire.get("completed_trainings") or []),
    )


def _comment_count(wire: dict[str, Any]) -> int:
    comments = wire.get("comments")
    if isinstance(comments, list) and comments and isinstance(comments[0], dict):
        return comments[0].get("count") or 0
    if isinstance(comments, int):
        return comments
    return wire.get("comments_count") or 0


def post_from_wire(wire: dict[str, Any]) -> Post:
    """Map a ``posts`` row to a Post."""
    return Post(
        id=str(wire.get("id", "")),
        author_id=wire.get("author_id"),
        content=wire.get("content") or "",
        type=wire.get("type"),
        likes=wire.get("likes_count") or 0,
        comments=_comment_count(wire),
        created_at=parse_timestamp(wire.get("created_at")),
        image=wire.get("image_url"),
        liked_by=list(wire.get("liked_by") or []),
    )


def training_from_wire(wire: dict[str, Any]) -> Training:
    """Map a ``trainings`` row to a Training."""
    return Training(
        id=str(wire.get("id", "")),
        title=wire.get("title") or "",
        description=wire.get("description"),
        type=wire.get("type"),
        url=wire.get("url"),
        duration=wire.get("duration"),
        created_at=parse_timestamp(wire.get("created_at")),
        author_name=wire.get("author_name"),
    )


def message_from_wire(wire: dict[str, Any]) -> DiscussionMessage:
    """Map a ``messages`` row (with joined author profile) to a DiscussionMessage."""
    profile = _joined(wire)
    return DiscussionMessage(
        id=str(wire.get("id", "")),
        author_id=wire.get("author_id"),
        author_name=profile.get("name") or DEFAULT_MESSAGE_AUTHOR,
        author_avatar=profile.get("avatar_url") or "",
        content=wire.get("content") or "",
        created_at=parse_timestamp(wire.get("created_at")),
    )


def message_from_notification(
    wire: dict[str, Any], members: list[Member] | None
) -> DiscussionMessage:
    """Map a pushed ``messages`` row, resolving the author from resident members.

    Change notifications carry the bare row without the joined profile,
    so the author is looked up in the already-loaded member directory.
    """
    author_id = wire.get("author_id")
    author = next((m for m in members or [] if m.id == author_id), None)
    name = author.name if author else DEFAULT_REALTIME_AUTHOR
    return DiscussionMessage(
        id=str(wire.get("id", "")),
        author_id=author_id,
        author_name=name,
        author_avatar=(author.avatar if author and author.avatar else avatar_url(name)),
        content=wire.get("content") or "",
        created_at=parse_timestamp(wire.get("created_at")),
    )


def post_from_notification(wire: dict[str, Any], members: list[Member] | None) -> Post:
    """Pushed ``posts`` rows need no reference resolution."""
    return post_from_wire(wire)


def training_from_notification(
    wire: dict[str, Any], members: list[Member] | None
) -> Training:
    return training_from_wire(wire)


def member_from_notification(wire: dict[str, Any], members: list[Member] | None) -> Member:
    return member_from_wire(wire)


def comment_from_wire(wire: dict[str, Any]) -> Comment:
    """Map a ``comments`` row (with joined author profile) to a Comment."""
    profile = _joined(wire)
    return Comment(
        id=str(wire.get("id", "")),
        post_id=str(wire.get("post_id", "")),
        author_name=profile.get("name") or wire.get("author_name") or DEFAULT_COMMENT_AUTHOR,
        content=wire.get("content") or "",
        created_at=parse_timestamp(wire.get("created_at")),
        author_id=wire.get("author_id"),
        client_ref=wire.get("client_ref"),
    )


def post_to_wire(post: Post) -> dict[str, Any]:
    """Insert payload for a new post. Counters always start at zero."""
    return {
        "author_id": post.author_id,
        "content": post.content,
        "type": post.type,
        "image_url": post.image,
        "liked_by": [],
        "likes_count": 0,
    }


def post_engagement_to_wire(post: Post) -> dict[str, Any]:
    """Update payload for a like toggle."""
    return {"likes_count": post.likes, "liked_by": list(post.liked_by)}


def training_to_wire(training: Training) -> dict[str, Any]:
    return {
        "title": training.title,
        "description": training.description,
        "type": training.type,
        "url": training.url,
        "duration": training.duration,
        "author_name": training.author_name,
    }

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    """Base for platform payloads: camelCase aliases, unknown fields kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Envelope(_WireModel):
    """Response wrapper used by every platform endpoint."""

    status_code: int = Field(default=200, alias="statusCode")
    data: Any = None
    message: str = ""
    success: bool = True


class AuthPayload(_WireModel):
    user: dict
    access_token: str = Field(alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class RefreshPayload(_WireModel):
    access_token: str = Field(alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    user: Optional[dict] = None


class LikeState(_WireModel):
    is_liked: bool = Field(default=False, alias="isLiked")
    likes_count: int = Field(default=0, alias="likesCount")

    def toggled(self) -> "LikeState":
        delta = -1 if self.is_liked else 1
        return LikeState(is_liked=not self.is_liked, likes_count=max(0, self.likes_count + delta))


class SubscriptionState(_WireModel):
    is_subscribed: bool = Field(default=False, alias="isSubscribed")
    subscribers_count: int = Field(default=0, alias="subscribersCount")

    def toggled(self) -> "SubscriptionState":
        delta = -1 if self.is_subscribed else 1
        return SubscriptionState(
            is_subscribed=not self.is_subscribed,
            subscribers_count=max(0, self.subscribers_count + delta),
        )


class PlaylistMembership(_WireModel):
    video_id: str = Field(alias="videoId")
    playlist_id: str = Field(alias="playlistId")
    contains: bool = False


class Comment(_WireModel):
    id: str = Field(alias="_id")
    content: str = ""
    owner: Optional[dict] = None
    video: Optional[str] = None
    likes_count: int = Field(default=0, alias="likesCount")
    is_liked: bool = Field(default=False, alias="isLiked")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    is_pending: bool = Field(default=False, alias="isPending")


class CommentPage(_WireModel):
    docs: List[Comment] = Field(default_factory=list)
    total_docs: int = Field(default=0, alias="totalDocs")
    page: int = 1
    has_next_page: bool = Field(default=False, alias="hasNextPage")

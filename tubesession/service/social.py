"""Social actions built on the optimistic mutation engine."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from tubesession.api import endpoints
from tubesession.api.client import ApiClient
from tubesession.api.schemas import (
    Comment,
    CommentPage,
    Envelope,
    LikeState,
    PlaylistMembership,
    SubscriptionState,
)
from tubesession.logging import get_logger
from tubesession.service.errors import ServerError
from tubesession.service.gateway import RequestGateway
from tubesession.service.optimistic import (
    MutationTarget,
    OptimisticMutationEngine,
    TargetKind,
)

logger = get_logger(__name__)

_LIKE_KINDS = {
    "video": TargetKind.VIDEO_LIKE,
    "comment": TargetKind.COMMENT_LIKE,
    "tweet": TargetKind.TWEET_LIKE,
}


def comments_scope(video_id: str) -> str:
    return f"comments:{video_id}"


def _membership_id(video_id: str, playlist_id: str) -> str:
    return f"{playlist_id}:{video_id}"


def _parse(model, data: Any, what: str):
    try:
        return model.model_validate(data if isinstance(data, dict) else {})
    except PydanticValidationError as exc:
        raise ServerError(f"unexpected {what} payload") from exc


def _reconcile_like(response: Envelope, applied: LikeState) -> LikeState:
    data = response.data if isinstance(response.data, dict) else {}
    # the platform may omit the counter; keep the local guess for it then
    return LikeState(
        is_liked=data.get("isLiked", applied.is_liked),
        likes_count=data.get("likesCount", applied.likes_count),
    )


def _reconcile_subscription(response: Envelope, applied: SubscriptionState) -> SubscriptionState:
    data = response.data if isinstance(response.data, dict) else {}
    return SubscriptionState(
        is_subscribed=data.get("isSubscribed", applied.is_subscribed),
        subscribers_count=data.get("subscribersCount", applied.subscribers_count),
    )


def _playlist_contains(playlist: Any, video_id: str) -> Optional[bool]:
    if not isinstance(playlist, dict) or not isinstance(playlist.get("videos"), list):
        return None
    for video in playlist["videos"]:
        vid = video.get("_id") if isinstance(video, dict) else video
        if vid == video_id:
            return True
    return False


class SocialActions:
    """Likes, subscriptions, playlist membership and comments."""

    def __init__(
        self,
        api: ApiClient,
        gateway: RequestGateway,
        engine: OptimisticMutationEngine,
    ) -> None:
        self.api = api
        self.gateway = gateway
        self.engine = engine

    @property
    def state(self):
        return self.engine.state

    # likes -------------------------------------------------------------

    def like_target(self, kind: str, target_id: str) -> MutationTarget:
        try:
            return MutationTarget(_LIKE_KINDS[kind], target_id)
        except KeyError as exc:
            raise ValueError(f"unsupported like target: {kind}") from exc

    def seed_like(self, kind: str, target_id: str, *, is_liked: bool, likes_count: int) -> None:
        self.state.seed(
            self.like_target(kind, target_id),
            LikeState(is_liked=is_liked, likes_count=likes_count),
        )

    def like_state(self, kind: str, target_id: str) -> LikeState:
        return self.state.read(self.like_target(kind, target_id)) or LikeState()

    async def _toggle_like(self, kind: str, target_id: str) -> LikeState:
        path = endpoints.like_toggle(kind, target_id)
        record = await self.engine.apply_optimistic(
            self.like_target(kind, target_id),
            lambda current: (current or LikeState()).toggled(),
            lambda token: self.api.post(path, token=token),
            reconcile=_reconcile_like,
        )
        return record.confirmed_state

    async def toggle_video_like(self, video_id: str) -> LikeState:
        return await self._toggle_like("video", video_id)

    async def toggle_comment_like(self, comment_id: str) -> LikeState:
        return await self._toggle_like("comment", comment_id)

    async def toggle_tweet_like(self, tweet_id: str) -> LikeState:
        return await self._toggle_like("tweet", tweet_id)

    # subscriptions -----------------------------------------------------

    def seed_subscription(self, channel_id: str, *, is_subscribed: bool, subscribers_count: int) -> None:
        self.state.seed(
            MutationTarget(TargetKind.SUBSCRIPTION, channel_id),
            SubscriptionState(is_subscribed=is_subscribed, subscribers_count=subscribers_count),
        )

    def subscription_state(self, channel_id: str) -> SubscriptionState:
        return self.state.read(MutationTarget(TargetKind.SUBSCRIPTION, channel_id)) or SubscriptionState()

    async def toggle_subscription(self, channel_id: str) -> SubscriptionState:
        path = endpoints.subscription_toggle(channel_id)
        record = await self.engine.apply_optimistic(
            MutationTarget(TargetKind.SUBSCRIPTION, channel_id),
            lambda current: (current or SubscriptionState()).toggled(),
            lambda token: self.api.post(path, token=token),
            reconcile=_reconcile_subscription,
        )
        return record.confirmed_state

    # playlists ---------------------------------------------------------

    async def _set_membership(self, video_id: str, playlist_id: str, contains: bool) -> PlaylistMembership:
        path = (
            endpoints.playlist_add(video_id, playlist_id)
            if contains
            else endpoints.playlist_remove(video_id, playlist_id)
        )

        def reconcile(response: Envelope, applied: PlaylistMembership) -> PlaylistMembership:
            server = _playlist_contains(response.data, video_id)
            if server is None:
                return applied
            return applied.model_copy(update={"contains": server})

        record = await self.engine.apply_optimistic(
            MutationTarget(TargetKind.PLAYLIST_MEMBERSHIP, _membership_id(video_id, playlist_id)),
            lambda current: PlaylistMembership(
                video_id=video_id, playlist_id=playlist_id, contains=contains
            ),
            lambda token: self.api.patch(path, token=token),
            reconcile=reconcile,
        )
        return record.confirmed_state

    async def add_to_playlist(self, video_id: str, playlist_id: str) -> PlaylistMembership:
        return await self._set_membership(video_id, playlist_id, True)

    async def remove_from_playlist(self, video_id: str, playlist_id: str) -> PlaylistMembership:
        return await self._set_membership(video_id, playlist_id, False)

    def playlist_membership(self, video_id: str, playlist_id: str) -> Optional[PlaylistMembership]:
        return self.state.read(
            MutationTarget(TargetKind.PLAYLIST_MEMBERSHIP, _membership_id(video_id, playlist_id))
        )

    # comments ----------------------------------------------------------

    def comments(self, video_id: str) -> List[Dict[str, Any]]:
        return self.state.collection(comments_scope(video_id)).items()

    async def load_comments(self, video_id: str, *, page: int = 1, limit: int = 10) -> CommentPage:
        envelope = await self.gateway.authed_call(
            lambda token: self.api.get(
                endpoints.video_comments(video_id),
                token=token,
                params={"page": page, "limit": limit},
            )
        )
        data = envelope.data
        if isinstance(data, list):
            data = {"docs": data, "totalDocs": len(data), "page": page}
        result = _parse(CommentPage, data, "comment page")
        docs = [comment.to_wire() for comment in result.docs]
        self.state.seed_collection(comments_scope(video_id), docs, append=page > 1)
        return result

    async def add_comment(self, video_id: str, content: str, *, author: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Show the comment at the top of the list at once; replaced by the saved one."""
        if not content or not content.strip():
            raise ValueError("comment content must not be empty")
        draft: Dict[str, Any] = {"content": content, "video": video_id}
        if author is not None:
            draft["owner"] = author
        return await self.engine.create_with_placeholder(
            comments_scope(video_id),
            draft,
            lambda token: self.api.post(
                endpoints.video_comments(video_id), token=token, json={"content": content}
            ),
            adopt=lambda response: _parse(Comment, response.data, "comment").to_wire(),
        )

    async def update_comment(self, video_id: str, comment_id: str, content: str) -> Dict[str, Any]:
        if not content or not content.strip():
            raise ValueError("comment content must not be empty")

        def reconcile(response: Envelope, applied: Dict[str, Any]) -> Dict[str, Any]:
            if isinstance(response.data, dict) and response.data.get("_id") == comment_id:
                return {**applied, **response.data}
            return applied

        record = await self.engine.apply_optimistic(
            MutationTarget(TargetKind.COMMENT, comment_id, comments_scope(video_id)),
            lambda current: {**(current or {"_id": comment_id}), "content": content},
            lambda token: self.api.patch(
                endpoints.comment(comment_id), token=token, json={"content": content}
            ),
            reconcile=reconcile,
        )
        return record.confirmed_state

    async def delete_comment(self, video_id: str, comment_id: str) -> None:
        await self.engine.apply_optimistic(
            MutationTarget(TargetKind.COMMENT, comment_id, comments_scope(video_id)),
            lambda current: None,
            lambda token: self.api.delete(endpoints.comment(comment_id), token=token),
        )


__all__ = ["SocialActions", "comments_scope"]

"""Platform REST paths, relative to ``Settings.api_base_url``."""

from __future__ import annotations

LOGIN = "/users/login"
REGISTER = "/users/register"
LOGOUT = "/users/logout"
REFRESH_TOKEN = "/users/refresh-token"
CURRENT_USER = "/users/current-user"
CHANGE_PASSWORD = "/users/change-password"
UPDATE_ACCOUNT = "/users/update-account"

# like toggles: v = video, c = comment, t = tweet
_LIKE_PREFIX = {"video": "v", "comment": "c", "tweet": "t"}


def like_toggle(kind: str, target_id: str) -> str:
    try:
        prefix = _LIKE_PREFIX[kind]
    except KeyError as exc:
        raise ValueError(f"unsupported like target: {kind}") from exc
    return f"/likes/toggle/{prefix}/{target_id}"


def subscription_toggle(channel_id: str) -> str:
    return f"/subscriptions/c/{channel_id}"


def playlist_add(video_id: str, playlist_id: str) -> str:
    return f"/playlist/add/{video_id}/{playlist_id}"


def playlist_remove(video_id: str, playlist_id: str) -> str:
    return f"/playlist/remove/{video_id}/{playlist_id}"


def video_comments(video_id: str) -> str:
    return f"/comments/{video_id}"


def comment(comment_id: str) -> str:
    return f"/comments/c/{comment_id}"

import asyncio
import inspect
import itertools
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tubesession_test_")
os.environ.setdefault("TUBESESSION_STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("CREDENTIAL_BACKEND", "memory")
os.environ.setdefault("API_BASE_URL", "http://platform.test/api/v1")
os.environ.setdefault("LOG_JSON", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tubesession.config import Settings  # noqa: E402
from tubesession.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from tubesession.storage.memory import MemoryCredentialStore  # noqa: E402

BASE_URL = "http://platform.test/api/v1"
API_PREFIX = "/api/v1"
PASSWORD = "correct-horse"


def envelope(data: Any, status_code: int = 200, message: str = "ok", success: bool = True) -> Dict[str, Any]:
    return {"statusCode": status_code, "data": data, "message": message, "success": success}


class FakePlatform:
    """In-process stand-in for the video platform REST API.

    Tokens are opaque counters; access tokens can be expired wholesale with
    ``expire_access_tokens`` to force the refresh path.
    """

    def __init__(self):
        self.password = PASSWORD
        self.calls: List[Tuple[str, str]] = []
        self.user = {"_id": "u1", "username": "alice", "email": "alice@example.com", "fullName": "Alice"}
        self._counter = itertools.count(1)
        self.valid_access: set[str] = set()
        self.valid_refresh: set[str] = set()
        self.reject_all_access = False
        self.rotate_refresh_tokens = True
        self.holds: Dict[str, asyncio.Event] = {}
        self.failures: List[Tuple[str, str, Any]] = []
        self.likes: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.playlists: Dict[str, List[str]] = {}
        self.comments: Dict[str, List[Dict[str, Any]]] = {}

    # test controls -------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._dispatch)

    async def _dispatch(self, request: httpx.Request) -> httpx.Response:
        # looked up per request so tests can wrap ``handle``
        return await self.handle(request)

    def issue_tokens(self) -> Tuple[str, str]:
        n = next(self._counter)
        access, refresh = f"access-{n}", f"refresh-{n}"
        self.valid_access.add(access)
        self.valid_refresh.add(refresh)
        return access, refresh

    def expire_access_tokens(self) -> None:
        self.valid_access.clear()

    def hold(self, path: str) -> asyncio.Event:
        """Block requests to ``path`` until the returned event is set."""
        event = asyncio.Event()
        self.holds[path] = event
        return event

    def fail_next(self, method: str, path: str, outcome: Any) -> None:
        """Answer the next matching request with a status code or raise an exception."""
        self.failures.append((method, path, outcome))

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    # request handling ----------------------------------------------------

    def _json(self, request: httpx.Request) -> Dict[str, Any]:
        if not request.content:
            return {}
        try:
            return json.loads(request.content)
        except ValueError:
            return {}

    def _cookie(self, request: httpx.Request, name: str) -> Optional[str]:
        for part in request.headers.get("cookie", "").split(";"):
            key, _, value = part.strip().partition("=")
            if key == name:
                return value
        return None

    def _authorized(self, request: httpx.Request) -> bool:
        header = request.headers.get("Authorization", "")
        token = header[len("Bearer "):] if header.startswith("Bearer ") else None
        return not self.reject_all_access and token in self.valid_access

    def _respond(
        self, status: int, data: Any = None, message: str = "ok", *, refresh_cookie: Optional[str] = None
    ) -> httpx.Response:
        success = status < 400
        headers = {}
        if refresh_cookie:
            headers["set-cookie"] = f"refreshToken={refresh_cookie}; Path=/; HttpOnly"
        return httpx.Response(status, json=envelope(data, status, message, success), headers=headers)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path[len(API_PREFIX):]
        self.calls.append((method, path))

        hold = self.holds.get(path)
        if hold is not None:
            await hold.wait()

        for index, (f_method, f_path, outcome) in enumerate(self.failures):
            if f_method == method and f_path == path:
                del self.failures[index]
                if isinstance(outcome, BaseException):
                    raise outcome
                return self._respond(outcome, message="injected failure")

        if path == "/users/login":
            body = self._json(request)
            identity_ok = body.get("username") == self.user["username"] or body.get("email") == self.user["email"]
            if not identity_ok or body.get("password") != PASSWORD:
                return self._respond(401, message="Invalid user credentials")
            access, refresh = self.issue_tokens()
            return self._respond(
                200,
                {"user": self.user, "accessToken": access, "refreshToken": refresh},
                refresh_cookie=refresh,
            )

        if path == "/users/register":
            access, refresh = self.issue_tokens()
            return self._respond(201, {"user": self.user, "accessToken": access, "refreshToken": refresh})

        if path == "/users/refresh-token":
            body = self._json(request)
            token = body.get("refreshToken") or self._cookie(request, "refreshToken")
            if token not in self.valid_refresh:
                return self._respond(401, message="Refresh token is expired or used")
            access, refresh = self.issue_tokens()
            data = {"accessToken": access}
            if self.rotate_refresh_tokens:
                self.valid_refresh.discard(token)
                data["refreshToken"] = refresh
            else:
                self.valid_refresh.discard(refresh)
            return self._respond(200, data)

        if not self._authorized(request):
            return self._respond(401, message="Unauthorized request")

        if path == "/users/current-user":
            return self._respond(200, self.user)
        if path == "/users/logout":
            return self._respond(200, {})
        if path == "/users/change-password":
            return self._respond(200, {})
        if path == "/users/update-account":
            self.user = {**self.user, **self._json(request)}
            return self._respond(200, self.user)

        parts = path.strip("/").split("/")
        if parts[:2] == ["likes", "toggle"]:
            state = self.likes.setdefault(parts[3], {"isLiked": False, "likesCount": 0})
            state["isLiked"] = not state["isLiked"]
            state["likesCount"] += 1 if state["isLiked"] else -1
            return self._respond(200, dict(state))
        if parts[:2] == ["subscriptions", "c"]:
            state = self.subscriptions.setdefault(parts[2], {"isSubscribed": False, "subscribersCount": 0})
            state["isSubscribed"] = not state["isSubscribed"]
            state["subscribersCount"] += 1 if state["isSubscribed"] else -1
            return self._respond(200, dict(state))
        if parts[0] == "playlist" and parts[1] in ("add", "remove"):
            video_id, playlist_id = parts[2], parts[3]
            videos = self.playlists.setdefault(playlist_id, [])
            if parts[1] == "add" and video_id not in videos:
                videos.append(video_id)
            if parts[1] == "remove" and video_id in videos:
                videos.remove(video_id)
            return self._respond(200, {"_id": playlist_id, "videos": [{"_id": v} for v in videos]})
        if parts[0] == "comments" and len(parts) == 2:
            video_id = parts[1]
            thread = self.comments.setdefault(video_id, [])
            if method == "GET":
                return self._respond(200, {"docs": thread, "totalDocs": len(thread), "page": 1})
            comment = {
                "_id": f"c{next(self._counter)}",
                "content": self._json(request).get("content", ""),
                "video": video_id,
                "owner": {"_id": self.user["_id"], "username": self.user["username"]},
            }
            thread.insert(0, comment)
            return self._respond(201, comment)
        if parts[:2] == ["comments", "c"]:
            comment_id = parts[2]
            for thread in self.comments.values():
                for index, comment in enumerate(thread):
                    if comment["_id"] != comment_id:
                        continue
                    if method == "DELETE":
                        del thread[index]
                        return self._respond(200, {})
                    comment["content"] = self._json(request).get("content", comment["content"])
                    return self._respond(200, dict(comment))
            return self._respond(404, message="Comment not found")

        return self._respond(404, message="Not found")


def make_settings(**overrides) -> Settings:
    values = {
        "api_base_url": BASE_URL,
        "credential_backend": "memory",
        "test_mode": True,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def credential_store():
    return MemoryCredentialStore()


@pytest.fixture
def make_runtime(platform, credential_store):
    """Build a runtime wired to the fake platform."""

    def _make(store: Optional[Any] = None, **setting_overrides) -> Runtime:
        return Runtime(
            make_settings(**setting_overrides),
            credential_store=store if store is not None else credential_store,
            transport=platform.transport(),
        )

    return _make


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

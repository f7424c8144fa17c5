"""Hook handlers that tell external programs about upload events."""

from __future__ import annotations

import json
import os
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

import requests

from tusstore.model import HookEvent


class HookType(str, Enum):
    """The events a hook can be invoked for."""

    POST_FINISH = "post-finish"
    POST_TERMINATE = "post-terminate"
    POST_RECEIVE = "post-receive"
    POST_CREATE = "post-create"
    PRE_CREATE = "pre-create"
    PRE_FINISH = "pre-finish"

    def __str__(self) -> str:
        return self.value


AVAILABLE_HOOKS: tuple[HookType, ...] = (
    HookType.PRE_CREATE,
    HookType.POST_CREATE,
    HookType.POST_RECEIVE,
    HookType.POST_TERMINATE,
    HookType.POST_FINISH,
    HookType.PRE_FINISH,
)


class HookError(Exception):
    """A hook rejected an event, with the status code and body to report."""

    def __init__(self, message: str, status_code: int, body: bytes = b"") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def _event_json(event: HookEvent) -> bytes:
    return json.dumps(
        event.to_dict(), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


class HookHandler(ABC):
    """Delivers hook events somewhere.

    ``invoke_hook`` returns the captured output (or None) and a return code,
    and raises when the hook failed.
    """

    @abstractmethod
    def setup(self) -> None:
        """Prepare the handler before the first invocation."""

    @abstractmethod
    def invoke_hook(
        self,
        hook_type: Union[HookType, str],
        event: HookEvent,
        capture_output: bool,
    ) -> tuple[Optional[bytes], int]:
        """Deliver one event."""


@dataclass
class FileHook(HookHandler):
    """Runs an executable named after the hook type from a directory.

    The event is written as JSON to the program's standard input. A missing
    program is not an error, since only some hooks may be provided.
    """

    directory: str

    def setup(self) -> None:
        """Resolve the hook directory to an absolute path."""
        self.directory = os.path.abspath(os.fspath(self.directory))

    def invoke_hook(
        self,
        hook_type: Union[HookType, str],
        event: HookEvent,
        capture_output: bool,
    ) -> tuple[Optional[bytes], int]:
        """Run the hook program; raise CalledProcessError on a non-zero exit."""
        hook_type = HookType(hook_type)
        hook_path = self.directory + os.sep + hook_type.value
        env = dict(os.environ)
        env["TUS_ID"] = event.upload.id
        env["TUS_SIZE"] = str(event.upload.size)
        env["TUS_OFFSET"] = str(event.upload.offset)

        try:
            completed = subprocess.run(
                [hook_path],
                input=_event_json(event),
                env=env,
                cwd=self.directory,
                stdout=subprocess.PIPE if capture_output else None,
                check=False,
            )
        except FileNotFoundError:
            return None, -1

        output = completed.stdout if capture_output else None
        if completed.returncode != 0:
            raise subprocess.CalledProcessError(
                completed.returncode, hook_path, output=output
            )
        return output, completed.returncode


def _canonical_header_key(key: str) -> str:
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


def _lookup_header(header: dict[str, list[str]], key: str) -> Optional[list[str]]:
    canonical = _canonical_header_key(key)
    for name, values in header.items():
        if _canonical_header_key(name) == canonical:
            return list(values)
    return None


@dataclass
class HttpHook(HookHandler):
    """POSTs events as JSON to an HTTP endpoint, retrying server errors."""

    endpoint: str
    max_retries: int = 3
    backoff: float = 1
    forward_headers: list[str] = field(default_factory=list)
    _session: Optional[requests.Session] = field(
        default=None, init=False, repr=False, compare=False
    )

    def setup(self) -> None:
        """Open the HTTP session reused by every invocation."""
        if self._session is None:
            self._session = requests.Session()

    def invoke_hook(
        self,
        hook_type: Union[HookType, str],
        event: HookEvent,
        capture_output: bool,
    ) -> tuple[Optional[bytes], int]:
        """Send the event; raise HookError for a response status of 400 or more."""
        hook_type = HookType(hook_type)
        headers: dict[str, str] = {}
        for key in self.forward_headers:
            if not key:
                continue
            values = _lookup_header(event.http_request.header, key)
            if values is not None:
                headers[key] = ", ".join(values)
        headers["Hook-Name"] = hook_type.value
        headers["Content-Type"] = "application/json"

        response = self._post(_event_json(event), headers)
        body = response.content
        if response.status_code >= 400:
            raise HookError(
                f"endpoint returned: {response.status_code} {response.reason}",
                response.status_code,
                body,
            )
        return (body if capture_output else None), response.status_code

    def _post(self, payload: bytes, headers: dict[str, str]) -> requests.Response:
        if self._session is not None:
            return self._post_with(self._session, payload, headers)
        with requests.Session() as session:
            return self._post_with(session, payload, headers)

    def _post_with(
        self, session: requests.Session, payload: bytes, headers: dict[str, str]
    ) -> requests.Response:
        attempts = max(1, self.max_retries)
        last_error: Optional[requests.RequestException] = None
        for attempt in range(attempts):
            if attempt:
                time.sleep(self.backoff)
            try:
                response = session.post(self.endpoint, data=payload, headers=headers)
            except requests.RequestException as exc:
                last_error = exc
                continue
            if response.status_code < 500 or attempt == attempts - 1:
                return response
            last_error = None
        assert last_error is not None
        raise last_error
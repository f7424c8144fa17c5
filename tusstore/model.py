"""Upload information, hook events and the errors shared by the stores."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union


class UploadNotFoundError(LookupError):
    """The requested upload does not exist."""

    def __init__(self, message: str = "upload not found") -> None:
        super().__init__(message)


class FileLockedError(RuntimeError):
    """The upload is locked by someone else."""

    def __init__(self, message: str = "file currently locked") -> None:
        super().__init__(message)


@dataclass
class FileInfo:
    """State of a single upload."""

    id: str = ""
    size: int = 0
    size_is_deferred: bool = False
    offset: int = 0
    meta_data: dict[str, str] = field(default_factory=dict)
    is_partial: bool = False
    is_final: bool = False
    partial_uploads: list[str] = field(default_factory=list)
    storage: dict[str, str] = field(default_factory=dict)
    # Set by the server so that hooks can abort a running upload.
    stop_upload: Optional[Callable[[], None]] = field(
        default=None, compare=False, repr=False
    )

    def _as_dict(self) -> dict[str, Any]:
        return {
            "ID": self.id,
            "Size": self.size,
            "SizeIsDeferred": self.size_is_deferred,
            "Offset": self.offset,
            "MetaData": dict(sorted(self.meta_data.items())),
            "IsPartial": self.is_partial,
            "IsFinal": self.is_final,
            "PartialUploads": list(self.partial_uploads),
            "Storage": dict(sorted(self.storage.items())),
        }

    def to_json(self) -> bytes:
        """Serialise the info as compact JSON."""
        return json.dumps(
            self._as_dict(), separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "FileInfo":
        """Build an info from its JSON form; missing fields take their defaults."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("upload info must be a JSON object")
        return cls(
            id=obj.get("ID") or "",
            size=int(obj.get("Size") or 0),
            size_is_deferred=bool(obj.get("SizeIsDeferred", False)),
            offset=int(obj.get("Offset") or 0),
            meta_data=dict(obj.get("MetaData") or {}),
            is_partial=bool(obj.get("IsPartial", False)),
            is_final=bool(obj.get("IsFinal", False)),
            partial_uploads=list(obj.get("PartialUploads") or []),
            storage=dict(obj.get("Storage") or {}),
        )


@dataclass
class HTTPRequest:
    """The parts of a client request that hooks get to see."""

    method: str = ""
    uri: str = ""
    remote_addr: str = ""
    header: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class HookEvent:
    """An upload together with the request that caused the event."""

    upload: FileInfo
    http_request: HTTPRequest = field(default_factory=HTTPRequest)

    def to_dict(self) -> dict[str, Any]:
        """Return the event in the shape sent to hook handlers."""
        return {
            "Upload": self.upload._as_dict(),
            "HTTPRequest": {
                "Method": self.http_request.method,
                "URI": self.http_request.uri,
                "RemoteAddr": self.http_request.remote_addr,
                "Header": {
                    key: list(values)
                    for key, values in self.http_request.header.items()
                },
            },
        }
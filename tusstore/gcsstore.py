"""Storage of uploads in a Google Cloud Storage bucket.

An upload is kept as several objects: the JSON info lives in ``<key>.info``,
every received chunk is written to ``<key>_<n>`` and, once the upload is
finished, the chunks are composed into a single object named ``<key>``.
"""

from __future__ import annotations

import io
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import BinaryIO

from tusstore.model import FileInfo, UploadNotFoundError
from tusstore.uid import uid

CONCURRENT_SIZE_REQUESTS = 32


@dataclass(frozen=True)
class GCSObjectParams:
    """Names a single object in a bucket."""

    bucket: str
    id: str


@dataclass(frozen=True)
class GCSComposeParams:
    """Describes the composition of several objects into one."""

    bucket: str
    sources: tuple[str, ...]
    destination: str

    def __init__(self, bucket: str, sources, destination: str) -> None:
        object.__setattr__(self, "bucket", bucket)
        object.__setattr__(self, "sources", tuple(sources))
        object.__setattr__(self, "destination", destination)


@dataclass(frozen=True)
class GCSFilterParams:
    """Selects the objects of a bucket whose names start with a prefix."""

    bucket: str
    prefix: str


class GCSObjectNotFoundError(LookupError):
    """The requested object does not exist in the bucket."""

    def __init__(self, message: str = "storage: object doesn't exist") -> None:
        super().__init__(message)


class GCSAPI(ABC):
    """The bucket operations the store needs."""

    @abstractmethod
    def read_object(self, params: GCSObjectParams) -> BinaryIO:
        """Open an object for reading; raise GCSObjectNotFoundError if missing."""

    @abstractmethod
    def get_object_size(self, params: GCSObjectParams) -> int:
        """Return the byte length of an object."""

    @abstractmethod
    def set_object_metadata(
        self, params: GCSObjectParams, metadata: dict[str, str]
    ) -> None:
        """Replace the custom metadata of an object."""

    @abstractmethod
    def delete_object(self, params: GCSObjectParams) -> None:
        """Delete a single object."""

    @abstractmethod
    def delete_objects_with_filter(self, params: GCSFilterParams) -> None:
        """Delete every object matched by the filter."""

    @abstractmethod
    def write_object(self, params: GCSObjectParams, reader: BinaryIO) -> int:
        """Write everything readable from ``reader`` and return the byte count."""

    @abstractmethod
    def compose_objects(self, params: GCSComposeParams) -> None:
        """Concatenate the source objects, in order, into the destination."""

    @abstractmethod
    def filter_objects(self, params: GCSFilterParams) -> list[str]:
        """Return the names of the objects matched by the filter, in chunk order."""


@dataclass
class GCSStore:
    """Keeps uploads in a bucket through a GCSAPI service."""

    bucket: str
    service: GCSAPI
    object_prefix: str = ""

    def new_upload(self, info: FileInfo) -> "GCSUpload":
        """Create an upload, assigning a fresh id if the info has none."""
        info = FileInfo(
            id=info.id or uid(),
            size=info.size,
            size_is_deferred=info.size_is_deferred,
            offset=info.offset,
            meta_data=dict(info.meta_data),
            is_partial=info.is_partial,
            is_final=info.is_final,
            partial_uploads=list(info.partial_uploads),
            storage={},
            stop_upload=info.stop_upload,
        )
        key = self.key_with_prefix(info.id)
        info.storage = {"Type": "gcsstore", "Bucket": self.bucket, "Key": key}
        self._write_info(key, info)
        return GCSUpload(info.id, self)

    def get_upload(self, upload_id: str) -> "GCSUpload":
        """Return a handle on an upload; nothing is fetched until it is used."""
        return GCSUpload(upload_id, self)

    def as_terminatable_upload(self, upload: "GCSUpload") -> "GCSUpload":
        if not isinstance(upload, GCSUpload):
            raise TypeError(f"expected a GCSUpload, got {type(upload).__name__}")
        return upload

    def key_with_prefix(self, key: str) -> str:
        """Prepend the object prefix, separated by a slash, to ``key``."""
        prefix = self.object_prefix
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        return prefix + key

    def _write_info(self, key: str, info: FileInfo) -> None:
        params = GCSObjectParams(bucket=self.bucket, id=f"{key}.info")
        self.service.write_object(params, io.BytesIO(info.to_json()))


@dataclass
class GCSUpload:
    """A single upload kept by a GCSStore."""

    id: str
    store: GCSStore = field(repr=False)

    @property
    def _key(self) -> str:
        return self.store.key_with_prefix(self.id)

    def write_chunk(self, offset: int, src: BinaryIO) -> int:
        """Store ``src`` as the next numbered chunk object."""
        store = self.store
        names = store.service.filter_objects(
            GCSFilterParams(bucket=store.bucket, prefix=f"{self._key}_")
        )
        max_idx = max((int(name.split("_")[-1]) for name in names), default=-1)
        params = GCSObjectParams(bucket=store.bucket, id=f"{self._key}_{max_idx + 1}")
        return store.service.write_object(params, src)

    def get_info(self) -> FileInfo:
        """Load the info, recompute the offset from the stored chunks and save it."""
        store = self.store
        params = GCSObjectParams(bucket=store.bucket, id=f"{self._key}.info")
        try:
            reader = store.service.read_object(params)
        except GCSObjectNotFoundError:
            raise UploadNotFoundError() from None
        try:
            data = reader.read()
        finally:
            close = getattr(reader, "close", None)
            if close is not None:
                close()
        info = FileInfo.from_json(data)

        names = store.service.filter_objects(
            GCSFilterParams(bucket=store.bucket, prefix=self._key)
        )
        info.offset = self._total_size(names)
        store._write_info(self._key, info)
        return info

    def _total_size(self, names: list[str]) -> int:
        store = self.store
        total = 0
        with ThreadPoolExecutor(max_workers=CONCURRENT_SIZE_REQUESTS) as pool:
            futures = [
                pool.submit(
                    store.service.get_object_size,
                    GCSObjectParams(bucket=store.bucket, id=name),
                )
                for name in names
            ]
            try:
                for future in as_completed(futures):
                    total += future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
        return total

    def finish_upload(self) -> None:
        """Compose the chunks into one object and give it the upload's metadata."""
        store = self.store
        filter_params = GCSFilterParams(bucket=store.bucket, prefix=f"{self._key}_")
        names = store.service.filter_objects(filter_params)
        store.service.compose_objects(
            GCSComposeParams(
                bucket=store.bucket, sources=names, destination=self._key
            )
        )
        store.service.delete_objects_with_filter(filter_params)
        info = self.get_info()
        store.service.set_object_metadata(
            GCSObjectParams(bucket=store.bucket, id=self._key), info.meta_data
        )

    def terminate(self) -> None:
        """Delete every object belonging to the upload."""
        self.store.service.delete_objects_with_filter(
            GCSFilterParams(bucket=self.store.bucket, prefix=self._key)
        )

    def get_reader(self) -> BinaryIO:
        """Open the composed upload object for reading."""
        return self.store.service.read_object(
            GCSObjectParams(bucket=self.store.bucket, id=self._key)
        )
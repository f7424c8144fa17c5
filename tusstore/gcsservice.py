"""A GCSAPI implementation on top of a plain object storage client.

The service adds what a bare client lacks: composition of more than 32
objects through temporary intermediate objects, CRC32C verification of
every composition and ordering of chunk objects by their index.
"""

from __future__ import annotations

import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, Sequence

from tusstore.gcsstore import (
    GCSAPI,
    GCSComposeParams,
    GCSFilterParams,
    GCSObjectParams,
)

COMPOSE_RETRIES = 3

# Storage limits a single composition to this many source objects.
MAX_OBJECT_COMPOSITION = 32

_CASTAGNOLI = 0x82F63B78
_MASK = 0xFFFFFFFF
_INDEX_RE = re.compile(r"[+-]?[0-9]+")


def _make_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ _CASTAGNOLI if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_TABLE = _make_table()


def crc32c(data: bytes, crc: int = 0) -> int:
    """Return the CRC32C (Castagnoli) checksum of ``data``, continuing ``crc``."""
    crc = (crc ^ _MASK) & _MASK
    for byte in data:
        crc = _TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ _MASK


def _gf2_times(matrix: Sequence[int], vector: int) -> int:
    total = 0
    for row in matrix:
        if not vector:
            break
        if vector & 1:
            total ^= row
        vector >>= 1
    return total


def _gf2_square(matrix: Sequence[int]) -> list[int]:
    return [_gf2_times(matrix, row) for row in matrix]


def crc32c_combine(crc1: int, crc2: int, len2: int) -> int:
    """Return the CRC32C of two joined blocks from their checksums.

    ``crc1`` and ``crc2`` are the checksums of the first and second block,
    ``len2`` is the byte length of the second block.
    """
    if len2 <= 0:
        return crc1

    # Operator for one zero bit, then squared to two and four zero bits.
    odd = [_CASTAGNOLI] + [1 << n for n in range(31)]
    even = _gf2_square(odd)
    odd = _gf2_square(even)

    while True:
        even = _gf2_square(odd)
        if len2 & 1:
            crc1 = _gf2_times(even, crc1)
        len2 >>= 1
        if not len2:
            break
        odd = _gf2_square(even)
        if len2 & 1:
            crc1 = _gf2_times(odd, crc1)
        len2 >>= 1
        if not len2:
            break

    return (crc1 ^ crc2) & _MASK


def filter_object_names(names: Iterable[str]) -> list[str]:
    """Order listed object names as the chunks of an upload.

    Names of the form ``<uid>_<idx>`` are placed at their index; names of
    the form ``<uid>_tmp_<lvl>_<idx>`` are appended as listed; names ending
    in ``info`` are skipped. A name without any underscore is a composed
    object and is returned alone.
    """
    result: list[str] = []
    for name in names:
        if name.endswith("info"):
            continue
        parts = name.split("_")
        if len(parts) == 1:
            return [name]
        if len(parts) == 4:
            result.append(name)
            continue
        if len(parts) != 2:
            raise ValueError("Invalid filter format for object name")
        if not _INDEX_RE.fullmatch(parts[1]):
            raise ValueError(f"invalid chunk index in object name: {name}")
        idx = int(parts[1])
        if idx < 0:
            raise ValueError(f"negative chunk index in object name: {name}")
        if len(result) <= idx:
            result.extend([""] * (idx - len(result) + 1))
        result[idx] = name
    return result


@dataclass
class ObjectAttrs:
    """Attributes of a stored object."""

    name: str
    size: int
    crc32c: int
    content_type: str = ""
    metadata: dict[str, str] = field(default_factory=dict)


class ObjectClient(ABC):
    """The primitive operations of an object storage bucket."""

    @abstractmethod
    def attrs(self, bucket: str, name: str) -> ObjectAttrs:
        """Return an object's attributes; raise GCSObjectNotFoundError if missing."""

    @abstractmethod
    def open_reader(self, bucket: str, name: str) -> BinaryIO:
        """Open an object for reading; raise GCSObjectNotFoundError if missing."""

    @abstractmethod
    def update_metadata(self, bucket: str, name: str, metadata: dict[str, str]) -> None:
        """Replace an object's custom metadata."""

    @abstractmethod
    def delete(self, bucket: str, name: str) -> None:
        """Delete an object."""

    @abstractmethod
    def write(self, bucket: str, name: str, reader: BinaryIO) -> int:
        """Store everything read from ``reader``; raise LookupError for a missing bucket."""

    @abstractmethod
    def compose(
        self, bucket: str, sources: Sequence[str], destination: str, content_type: str
    ) -> None:
        """Concatenate at most 32 source objects into ``destination``."""

    @abstractmethod
    def list_names(self, bucket: str, prefix: str) -> Iterable[str]:
        """Yield the names of the objects starting with ``prefix``."""


@dataclass
class GCSService(GCSAPI):
    """Implements the store's bucket operations with an ObjectClient."""

    client: ObjectClient

    def get_object_attrs(self, params: GCSObjectParams) -> ObjectAttrs:
        """Return the attributes of an object."""
        return self.client.attrs(params.bucket, params.id)

    def get_object_size(self, params: GCSObjectParams) -> int:
        """Return the byte length of an object."""
        return self.get_object_attrs(params).size

    def delete_objects_with_filter(self, params: GCSFilterParams) -> None:
        """Delete every object matched by the filter."""
        for name in self.filter_objects(params):
            self.delete_object(GCSObjectParams(bucket=params.bucket, id=name))

    def compose_objects(self, params: GCSComposeParams) -> None:
        """Compose any number of objects, in groups of 32 and recursively."""
        self._recursive_compose(list(params.sources), params, 0)

    def _recursive_compose(
        self, sources: list[str], params: GCSComposeParams, level: int
    ) -> None:
        if len(sources) <= MAX_OBJECT_COMPOSITION:
            self._compose(params.bucket, sources, params.destination)
            self.delete_objects_with_filter(
                GCSFilterParams(bucket=params.bucket, prefix=f"{params.destination}_tmp")
            )
            return

        count = math.ceil(len(sources) / MAX_OBJECT_COMPOSITION)
        tmp_sources = []
        for i in range(count):
            group = sources[i * MAX_OBJECT_COMPOSITION:(i + 1) * MAX_OBJECT_COMPOSITION]
            tmp_dst = f"{params.destination}_tmp_{level}_{i}"
            self._compose(params.bucket, group, tmp_dst)
            tmp_sources.append(tmp_dst)

        self._recursive_compose(tmp_sources, params, level + 1)

    def _compose(self, bucket: str, sources: list[str], destination: str) -> None:
        if not sources:
            raise ValueError("nothing to compose: no source objects given")

        first_attrs = None
        crc = 0
        for name in sources:
            attrs = self.get_object_attrs(GCSObjectParams(bucket=bucket, id=name))
            if first_attrs is None:
                first_attrs = attrs
                crc = attrs.crc32c
            else:
                crc = crc32c_combine(crc, attrs.crc32c, attrs.size)

        dst_params = GCSObjectParams(bucket=bucket, id=destination)
        for _ in range(COMPOSE_RETRIES):
            if self.compose_from(sources, dst_params, first_attrs.content_type) == crc:
                return

        self.delete_object(dst_params)
        raise RuntimeError("GCS compose failed: Mismatch of CRC32 checksums")

    def read_object(self, params: GCSObjectParams) -> BinaryIO:
        """Open an object for reading."""
        return self.client.open_reader(params.bucket, params.id)

    def set_object_metadata(
        self, params: GCSObjectParams, metadata: dict[str, str]
    ) -> None:
        """Replace the custom metadata of an object."""
        self.client.update_metadata(params.bucket, params.id, dict(metadata))

    def delete_object(self, params: GCSObjectParams) -> None:
        """Delete a single object."""
        self.client.delete(params.bucket, params.id)

    def write_object(self, params: GCSObjectParams, reader: BinaryIO) -> int:
        """Write an object and return the number of bytes stored."""
        try:
            return self.client.write(params.bucket, params.id, reader)
        except LookupError as exc:
            raise LookupError(
                f"gcsstore: the bucket {params.bucket} could not be found "
                "while trying to write an object"
            ) from exc

    def compose_from(
        self, sources: Sequence[str], dst_params: GCSObjectParams, content_type: str
    ) -> int:
        """Compose the sources into the destination and return its CRC32C."""
        self.client.compose(dst_params.bucket, list(sources), dst_params.id, content_type)
        return self.client.attrs(dst_params.bucket, dst_params.id).crc32c

    def filter_objects(self, params: GCSFilterParams) -> list[str]:
        """Return the names matched by the filter, chunks in index order."""
        return filter_object_names(self.client.list_names(params.bucket, params.prefix))
"""Storage of uploads in a local directory.

Every upload is kept in two files: ``<id>`` holds the raw bytes received and
``<id>.info`` holds the upload's information as JSON. Nothing is ever
cleaned up automatically.
"""

from __future__ import annotations

import dataclasses
import os
import shutil
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterable, Optional

from tusstore.model import FileInfo, UploadNotFoundError
from tusstore.uid import uid

_FILE_PERM = 0o664
_CHUNK_SIZE = 64 * 1024


def _copy_info(info: FileInfo) -> FileInfo:
    return dataclasses.replace(
        info,
        meta_data=dict(info.meta_data),
        partial_uploads=list(info.partial_uploads),
        storage=dict(info.storage),
    )


def _open_append(path: str) -> BinaryIO:
    """Open an existing file for appending; a missing file is an error."""
    fd = os.open(path, os.O_WRONLY | os.O_APPEND)
    return os.fdopen(fd, "ab")


@dataclass
class FileUpload:
    """A single upload stored by a FileStore."""

    info: FileInfo
    info_path: str
    bin_path: str

    def get_info(self) -> FileInfo:
        """Return a copy of the upload's current information."""
        return _copy_info(self.info)

    def write_chunk(self, offset: int, src: BinaryIO) -> int:
        """Append everything readable from ``src`` and return the byte count."""
        written = 0
        try:
            with _open_append(self.bin_path) as fh:
                while chunk := src.read(_CHUNK_SIZE):
                    fh.write(chunk)
                    written += len(chunk)
        finally:
            self.info.offset += written
        return written

    def get_reader(self) -> BinaryIO:
        """Open the uploaded data for reading."""
        return open(self.bin_path, "rb")

    def terminate(self) -> None:
        """Delete the info file and the data file."""
        os.remove(self.info_path)
        os.remove(self.bin_path)

    def concat_uploads(self, uploads: Iterable["FileUpload"]) -> None:
        """Append the data of the given uploads, in order, to this upload."""
        with _open_append(self.bin_path) as fh:
            for partial in uploads:
                partial = _as_file_upload(partial)
                with open(partial.bin_path, "rb") as src:
                    shutil.copyfileobj(src, fh, _CHUNK_SIZE)

    def declare_length(self, length: int) -> None:
        """Fix the size of an upload whose length was deferred."""
        self.info.size = length
        self.info.size_is_deferred = False
        self._write_info()

    def finish_upload(self) -> None:
        """Persist the final information of the completed upload."""
        self._write_info()

    def _write_info(self) -> None:
        fd = os.open(
            self.info_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _FILE_PERM
        )
        with os.fdopen(fd, "wb") as fh:
            fh.write(self.info.to_json())


def _as_file_upload(upload: object) -> FileUpload:
    if not isinstance(upload, FileUpload):
        raise TypeError(f"expected a FileUpload, got {type(upload).__name__}")
    return upload


@dataclass
class FileStore:
    """Stores uploads in a directory, which must already exist."""

    path: str
    get_reader_ext: Optional[Callable[[str], BinaryIO]] = None

    def new_upload(self, info: FileInfo) -> FileUpload:
        """Create a new, empty upload with a fresh id."""
        upload_id = uid()
        bin_path = self._bin_path(upload_id)
        info = _copy_info(info)
        info.id = upload_id
        info.storage = {"Type": "filestore", "Path": bin_path}

        try:
            fd = os.open(bin_path, os.O_CREAT | os.O_WRONLY, _FILE_PERM)
        except FileNotFoundError as exc:
            raise FileNotFoundError(
                f"upload directory does not exist: {self.path}"
            ) from exc
        os.close(fd)

        upload = FileUpload(
            info=info, info_path=self._info_path(upload_id), bin_path=bin_path
        )
        upload._write_info()
        return upload

    def get_upload(self, upload_id: str) -> FileUpload:
        """Load an existing upload; raise UploadNotFoundError if it is missing."""
        info_path = self._info_path(upload_id)
        bin_path = self._bin_path(upload_id)
        try:
            with open(info_path, "rb") as fh:
                data = fh.read()
        except FileNotFoundError:
            raise UploadNotFoundError() from None
        info = FileInfo.from_json(data)
        try:
            size = os.stat(bin_path).st_size
        except FileNotFoundError:
            raise UploadNotFoundError() from None
        info.offset = size
        return FileUpload(info=info, info_path=info_path, bin_path=bin_path)

    def get_reader(self, upload_id: str) -> BinaryIO:
        """Open an upload's data, through ``get_reader_ext`` when one is set."""
        if self.get_reader_ext is not None:
            return self.get_reader_ext(upload_id)
        return open(self._bin_path(upload_id), "rb")

    def as_terminatable_upload(self, upload: FileUpload) -> FileUpload:
        return _as_file_upload(upload)

    def as_length_declarable_upload(self, upload: FileUpload) -> FileUpload:
        return _as_file_upload(upload)

    def as_concatable_upload(self, upload: FileUpload) -> FileUpload:
        return _as_file_upload(upload)

    def _bin_path(self, upload_id: str) -> str:
        return os.path.join(self.path, upload_id)

    def _info_path(self, upload_id: str) -> str:
        return os.path.join(self.path, upload_id + ".info")
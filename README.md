# tusstore

This package provides building blocks for a server that accepts resumable
uploads with the tus protocol.

| Module | Contents |
| --- | --- |
| `tusstore.model` | `FileInfo`, `HTTPRequest`, `HookEvent`, `UploadNotFoundError`, `FileLockedError` |
| `tusstore.filestore` | `FileStore` and `FileUpload` keep uploads in a local directory |
| `tusstore.filelocker` | `FileLocker` and `FileUploadLock` give an upload an exclusive lock through a lock file |
| `tusstore.gcsstore` | `GCSStore` and `GCSUpload` keep uploads in a bucket, through the `GCSAPI` interface |
| `tusstore.gcsservice` | `GCSService` implements `GCSAPI` on top of an `ObjectClient`; it also has `crc32c`, `crc32c_combine` and `filter_object_names` |
| `tusstore.body_reader` | `BodyReader` wraps a request body |
| `tusstore.hooks` | `HookType`, `HookError`, `HookHandler`, `FileHook`, `HttpHook` |
| `tusstore.dispatch` | `HookDispatcher` passes enabled events to a hook handler |
| `tusstore.listener` | `Listener` and `Conn`, TCP and UNIX sockets with read and write timeouts |
| `tusstore.cli` | The `tusstore` command |
| `tusstore.uid` | `uid()` returns 32 random hex digits |

## Installation

```
pip install tusstore
```

## Uploads on disk

`FileStore` keeps each upload as two files:

- `<id>` holds the received bytes.
- `<id>.info` holds the `FileInfo` as JSON.

The directory must already exist. If it does not, `new_upload` raises
`FileNotFoundError("upload directory does not exist: ...")`.

```python
import io
from tusstore.filestore import FileStore
from tusstore.filelocker import FileLocker
from tusstore.model import FileInfo

store = FileStore("./uploads")
upload = store.new_upload(FileInfo(size=11, meta_data={"filename": "hello.txt"}))
upload.write_chunk(0, io.BytesIO(b"hello world"))   # returns 11

info = upload.get_info()
print(info.id, info.offset, info.size)               # <id> 11 11

with FileLocker("./uploads").new_lock(info.id):
    same = store.get_upload(info.id)
```

`FileStore` methods:

- `get_upload(upload_id)` raises `UploadNotFoundError` when either file is missing.

`FileUpload` methods:

- `terminate()` deletes both files.
- `concat_uploads(uploads)` appends the data of other uploads in order.
- `declare_length(length)` sets the size of an upload whose size was deferred.

Locks:

- Each lock file holds the PID of the process that owns it.
- `lock()` raises `FileLockedError` while a running process holds the lock. A
  lock left behind by a process that has ended is taken over.
- `unlock()` does nothing if the lock file is missing.

## Uploads in a bucket

`GCSStore(bucket, service, object_prefix="")` stores these objects:

- the info as `<key>.info`;
- each chunk as `<key>_<n>`.

`finish_upload()` does the following:

- composes the chunks into `<key>`;
- deletes the chunk objects;
- recomputes the offset;
- copies the upload's metadata onto the composed object.

`GCSService` implements `GCSAPI` for any `ObjectClient`. It composes more
than 32 objects in stages, using temporary objects. It checks every
composition against the CRC32C of its sources and retries up to 3 times.
Both `GCSService` and `GCSStore` raise `GCSObjectNotFoundError` for
missing objects.

## Hooks

```python
from tusstore.dispatch import HookDispatcher
from tusstore.hooks import FileHook, HttpHook, HookType

hook = HttpHook(endpoint="http://localhost:8081/hooks", max_retries=3, backoff=1)
hook.setup()
dispatcher = HookDispatcher(handler=hook, enabled_hooks=[HookType.PRE_CREATE])
```

`FileHook(directory)` runs the executable named after the hook type, such
as `post-finish`, from its directory.

- The event goes as JSON on standard input.
- The environment gains `TUS_ID`, `TUS_SIZE` and `TUS_OFFSET`.
- If the executable does not exist, the call is a no-op.
- A non-zero exit status raises `subprocess.CalledProcessError`.

`HttpHook` POSTs the same JSON with the `Hook-Name` header.

- It forwards the request headers listed in `forward_headers`.
- It retries network errors and 5xx responses, making up to `max_retries`
  attempts with `backoff` seconds between them.
- A final status of 400 or more raises `HookError`.

`HookDispatcher` behaviour:

- It skips events that are not enabled.
- It logs each invocation and counts failures in `hook_errors`.
- It calls the upload's `stop_upload` when a `post-receive` hook returns
  `stop_upload_code`.
- `pre_create_callback` and `pre_finish_callback` raise an error naming the
  failed hook.

## Command line

To print version information:

```
tusstore -version
```

To start the command:

```
tusstore -host 127.0.0.1 -port 1080
```

It listens on the given address, or on a UNIX socket with `-unix-sock PATH`.

- Every connection gets a plain-text welcome message. The message names the
  base path (`-base-path`) and the metrics path (`-metrics-path`).
- `-timeout` sets the read and write timeout in milliseconds.
- `-cpuprofile FILE` writes function call counts to `FILE` after 20 seconds.

`-hooks-enabled-events` takes a comma separated list from:

- `pre-create`
- `post-create`
- `post-receive`
- `post-terminate`
- `post-finish`
- `pre-finish`

An unknown name makes the command exit with status 1.

## What the package does not do

- **No tus HTTP handler.** Nothing here serves the tus protocol itself, that
  is the creation, offset, patch, termination and concatenation requests.
  The `tusstore` command answers with the welcome message only. It does not
  store uploads.
- **Flags that are parsed but unused.** The command accepts these flags but
  does not act on them:
  - the storage flags (`-upload-dir`, the `-s3-*` and `-gcs-*` flags);
  - the hook flags;
  - `-max-size`, `-behind-proxy`, `-expose-metrics`;
  - the TLS flags.
- **Stores that are not included.**
  - There is no S3 store.
  - There is no ready-made Google Cloud Storage client. You supply an
    `ObjectClient` implementation to `GCSService`.
- **Hook handlers that are not included.** There are no gRPC or plugin hook
  handlers.
- **No metrics endpoint.** The number of open connections is available only
  through `tusstore.listener.open_connections()`.
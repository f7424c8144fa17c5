"""Dispatching of upload events to the configured hook handler."""

from __future__ import annotations

import logging
import subprocess
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, Union

from tusstore.hooks import AVAILABLE_HOOKS, HookError, HookHandler, HookType
from tusstore.model import HookEvent


def _log_event(logger: logging.Logger, level: int, name: str, *details: str) -> None:
    parts = [f'event="{name}"']
    pairs = iter(details)
    for key, value in zip(pairs, pairs):
        parts.append(f'{key}="{value}"')
    logger.log(level, " ".join(parts))


def _failure_details(exc: BaseException) -> tuple[Optional[bytes], int]:
    if isinstance(exc, HookError):
        return exc.body, exc.status_code
    if isinstance(exc, subprocess.CalledProcessError):
        return exc.output, exc.returncode
    return None, 0


@dataclass
class HookDispatcher:
    """Invokes a hook handler for the enabled hook types and logs the outcome."""

    handler: Optional[HookHandler] = None
    enabled_hooks: list[HookType] = field(default_factory=lambda: list(AVAILABLE_HOOKS))
    verbose: bool = True
    stop_upload_code: int = 0
    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("tusstore")
    )
    hook_errors: Counter = field(default_factory=Counter)

    def __post_init__(self) -> None:
        self.enabled_hooks = [HookType(h) for h in self.enabled_hooks]
        for hook_type in AVAILABLE_HOOKS:
            self.hook_errors.setdefault(hook_type, 0)

    def is_enabled(self, hook_type: Union[HookType, str]) -> bool:
        """Tell whether events of this type are passed on."""
        return HookType(hook_type) in self.enabled_hooks

    def invoke_sync(
        self,
        hook_type: Union[HookType, str],
        event: HookEvent,
        capture_output: bool,
    ) -> Optional[bytes]:
        """Run the hook now and return its output; re-raise its failure."""
        hook_type = HookType(hook_type)
        if not self.is_enabled(hook_type):
            return None

        upload_id = event.upload.id
        if hook_type is HookType.POST_FINISH:
            _log_event(
                self.logger, logging.INFO, "UploadFinished",
                "id", upload_id, "size", str(event.upload.size),
            )
        elif hook_type is HookType.POST_TERMINATE:
            _log_event(self.logger, logging.INFO, "UploadTerminated", "id", upload_id)

        if self.handler is None:
            return None

        name = hook_type.value
        if self.verbose:
            _log_event(
                self.logger, logging.INFO, "HookInvocationStart",
                "type", name, "id", upload_id,
            )

        error: Optional[Exception] = None
        try:
            output, return_code = self.handler.invoke_hook(
                hook_type, event, capture_output
            )
        except Exception as exc:
            error = exc
            output, return_code = _failure_details(exc)
            _log_event(
                self.logger, logging.ERROR, "HookInvocationError",
                "type", name, "id", upload_id, "error", str(exc),
            )
            self.hook_errors[hook_type] += 1
        else:
            if self.verbose:
                _log_event(
                    self.logger, logging.INFO, "HookInvocationFinish",
                    "type", name, "id", upload_id,
                )

        if (
            hook_type is HookType.POST_RECEIVE
            and self.stop_upload_code != 0
            and self.stop_upload_code == return_code
        ):
            _log_event(self.logger, logging.INFO, "HookStopUpload", "id", upload_id)
            if event.upload.stop_upload is not None:
                event.upload.stop_upload()

        if error is not None:
            raise error
        return output

    def invoke_async(
        self, hook_type: Union[HookType, str], event: HookEvent
    ) -> threading.Thread:
        """Run the hook in a background thread; failures are only logged."""

        def run() -> None:
            try:
                self.invoke_sync(hook_type, event, False)
            except Exception:
                pass  # already logged and counted by invoke_sync

        thread = threading.Thread(target=run, daemon=True)
        thread.start()
        return thread

    def callback(self, hook_type: Union[HookType, str], event: HookEvent) -> None:
        """Run a blocking hook, raising an error that describes its failure."""
        hook_type = HookType(hook_type)
        try:
            self.invoke_sync(hook_type, event, True)
        except HookError as exc:
            raise HookError(
                f"{hook_type.value} hook failed: {exc}", exc.status_code, exc.body
            ) from exc
        except Exception as exc:
            output, _ = _failure_details(exc)
            text = (output or b"").decode("utf-8", errors="replace")
            raise RuntimeError(f"{hook_type.value} hook failed: {exc}\n{text}") from exc

    def pre_create_callback(self, event: HookEvent) -> None:
        """Run the pre-create hook."""
        self.callback(HookType.PRE_CREATE, event)

    def pre_finish_callback(self, event: HookEvent) -> None:
        """Run the pre-finish hook."""
        self.callback(HookType.PRE_FINISH, event)
import logging
import subprocess

import pytest

from tusstore.dispatch import HookDispatcher
from tusstore.hooks import AVAILABLE_HOOKS, HookError, HookHandler, HookType
from tusstore.model import FileInfo, HookEvent


class RecordingHandler(HookHandler):
    def __init__(self, output=b"", code=0, error=None):
        self.output = output
        self.code = code
        self.error = error
        self.calls = []

    def setup(self):
        pass

    def invoke_hook(self, hook_type, event, capture_output):
        self.calls.append((hook_type, event.upload.id, capture_output))
        if self.error is not None:
            raise self.error
        return self.output, self.code


def _event(stopped=None):
    info = FileInfo(id="up1", size=10)
    if stopped is not None:
        info.stop_upload = lambda: stopped.append(True)
    return HookEvent(upload=info)


def test_all_hooks_enabled_by_default():
    dispatcher = HookDispatcher()
    assert all(dispatcher.is_enabled(h) for h in AVAILABLE_HOOKS)
    assert dispatcher.hook_errors[HookType.POST_FINISH] == 0


def test_disabled_hook_is_not_invoked():
    handler = RecordingHandler(output=b"out")
    dispatcher = HookDispatcher(handler=handler, enabled_hooks=[HookType.POST_FINISH])
    assert dispatcher.is_enabled("post-create") is False
    assert dispatcher.invoke_sync(HookType.POST_CREATE, _event(), True) is None
    assert handler.calls == []


def test_without_handler_returns_none(caplog):
    dispatcher = HookDispatcher()
    with caplog.at_level(logging.INFO, logger="tusstore"):
        assert dispatcher.invoke_sync(HookType.POST_FINISH, _event(), True) is None
    assert "UploadFinished" in caplog.text


def test_invoke_sync_returns_output():
    handler = RecordingHandler(output=b"out")
    dispatcher = HookDispatcher(handler=handler)
    assert dispatcher.invoke_sync("post-create", _event(), True) == b"out"
    assert handler.calls == [(HookType.POST_CREATE, "up1", True)]


def test_failure_is_counted_and_reraised(caplog):
    handler = RecordingHandler(error=ValueError("broken"))
    dispatcher = HookDispatcher(handler=handler)
    with caplog.at_level(logging.ERROR, logger="tusstore"):
        with pytest.raises(ValueError, match="broken"):
            dispatcher.invoke_sync(HookType.POST_CREATE, _event(), False)
    assert dispatcher.hook_errors[HookType.POST_CREATE] == 1
    assert "HookInvocationError" in caplog.text


def test_stop_code_stops_upload():
    stopped = []
    dispatcher = HookDispatcher(handler=RecordingHandler(code=5), stop_upload_code=5)
    dispatcher.invoke_sync(HookType.POST_RECEIVE, _event(stopped), False)
    assert stopped == [True]


def test_stop_code_from_failed_process():
    stopped = []
    error = subprocess.CalledProcessError(5, "post-receive")
    dispatcher = HookDispatcher(handler=RecordingHandler(error=error), stop_upload_code=5)
    with pytest.raises(subprocess.CalledProcessError):
        dispatcher.invoke_sync(HookType.POST_RECEIVE, _event(stopped), False)
    assert stopped == [True]


def test_stop_code_mismatch_or_other_hook_does_nothing():
    stopped = []
    dispatcher = HookDispatcher(handler=RecordingHandler(code=4), stop_upload_code=5)
    dispatcher.invoke_sync(HookType.POST_RECEIVE, _event(stopped), False)
    matching = HookDispatcher(handler=RecordingHandler(code=5), stop_upload_code=5)
    matching.invoke_sync(HookType.POST_CREATE, _event(stopped), False)
    assert stopped == []


def test_zero_stop_code_disables_stopping():
    stopped = []
    dispatcher = HookDispatcher(handler=RecordingHandler(code=0), stop_upload_code=0)
    dispatcher.invoke_sync(HookType.POST_RECEIVE, _event(stopped), False)
    assert stopped == []


def test_invoke_async_runs_in_background():
    handler = RecordingHandler(error=RuntimeError("ignored"))
    dispatcher = HookDispatcher(handler=handler)
    thread = dispatcher.invoke_async(HookType.POST_FINISH, _event())
    thread.join(timeout=5)
    assert handler.calls == [(HookType.POST_FINISH, "up1", False)]
    assert dispatcher.hook_errors[HookType.POST_FINISH] == 1


def test_callback_wraps_hook_error():
    handler = RecordingHandler(error=HookError("endpoint returned: 403", 403, b"no"))
    dispatcher = HookDispatcher(handler=handler)
    with pytest.raises(HookError) as info:
        dispatcher.pre_create_callback(_event())
    assert str(info.value) == "pre-create hook failed: endpoint returned: 403"
    assert info.value.status_code == 403
    assert info.value.body == b"no"


def test_callback_includes_process_output():
    error = subprocess.CalledProcessError(1, "pre-finish", output=b"details")
    dispatcher = HookDispatcher(handler=RecordingHandler(error=error))
    with pytest.raises(RuntimeError) as info:
        dispatcher.pre_finish_callback(_event())
    message = str(info.value)
    assert message.startswith("pre-finish hook failed: ")
    assert message.endswith("\ndetails")


def test_callback_success_captures_output():
    handler = RecordingHandler(output=b"ok")
    dispatcher = HookDispatcher(handler=handler)
    assert dispatcher.callback(HookType.PRE_CREATE, _event()) is None
    assert handler.calls == [(HookType.PRE_CREATE, "up1", True)]
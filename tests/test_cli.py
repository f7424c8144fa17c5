import logging
import os

import pytest

from tusstore.cli import (
    Flags,
    log_event,
    main,
    parse_enabled_hooks,
    parse_flags,
    prepare_greeting,
    version_text,
)
from tusstore.hooks import AVAILABLE_HOOKS, HookType


def test_defaults():
    flags = parse_flags([])
    assert flags.http_host == "0.0.0.0"
    assert flags.http_port == "1080"
    assert flags.basepath == "/files/"
    assert flags.upload_dir == "./data"
    assert flags.timeout == 6 * 1000
    assert flags.s3_part_size == 50 * 1024 * 1024
    assert flags.metrics_path == "/metrics"
    assert flags.tls_mode == "tls12"
    assert flags.verbose_output is True
    assert flags.expose_metrics is True
    assert flags.show_version is False
    assert flags.http_hooks_retry == 3
    assert flags.enabled_hooks == [
        HookType.PRE_CREATE,
        HookType.POST_CREATE,
        HookType.POST_RECEIVE,
        HookType.POST_TERMINATE,
        HookType.POST_FINISH,
    ]
    assert flags.args == []


def test_values_given_in_several_forms():
    flags = parse_flags(
        ["-port", "8080", "--host=127.0.0.1", "-max-size=100", "-verbose=false",
         "-behind-proxy"]
    )
    assert flags.http_port == "8080"
    assert flags.http_host == "127.0.0.1"
    assert flags.max_size == 100
    assert flags.verbose_output is False
    assert flags.behind_proxy is True


def test_parsing_stops_at_first_argument():
    flags = parse_flags(["-port", "9", "extra", "-host", "x"])
    assert flags.http_port == "9"
    assert flags.args == ["extra", "-host", "x"]
    assert flags.http_host == Flags().http_host


def test_double_dash_ends_flags():
    flags = parse_flags(["-version", "--", "-port"])
    assert flags.show_version is True
    assert flags.args == ["-port"]
    assert flags.http_port == "1080"


@pytest.mark.parametrize(
    "argv",
    [["-verbose=maybe"], ["-unknown-flag"], ["-max-size", "big"], ["-port"]],
)
def test_bad_flags_exit(argv):
    with pytest.raises(SystemExit) as excinfo:
        parse_flags(argv)
    assert excinfo.value.code == 2


def test_hooks_dir_made_absolute():
    flags = parse_flags(["-hooks-dir", os.path.join("rel", "hooks")])
    assert os.path.isabs(flags.file_hooks_dir)
    assert flags.file_hooks_dir.endswith(os.path.join("rel", "hooks"))


def test_parse_enabled_hooks_empty_enables_all():
    assert parse_enabled_hooks("") == list(AVAILABLE_HOOKS)


def test_parse_enabled_hooks_keeps_order():
    assert parse_enabled_hooks("post-finish, pre-create") == [
        HookType.POST_FINISH,
        HookType.PRE_CREATE,
    ]


def test_parse_enabled_hooks_unknown():
    with pytest.raises(ValueError, match="Unknown hook event type in -hooks-enabled-events flag: bogus"):
        parse_enabled_hooks("post-create,bogus")


def test_unknown_hook_in_flags_raises():
    with pytest.raises(ValueError):
        parse_flags(["-hooks-enabled-events", "nope"])


def test_greeting_mentions_paths_and_version():
    flags = parse_flags(["-base-path", "/uploads/", "-metrics-path", "/stats"])
    text = prepare_greeting(flags)
    assert "- /uploads/ - send your tus uploads to this endpoint" in text
    assert "- /stats - gather statistics" in text
    assert "Version = n/a" in text
    assert text.startswith("Welcome to tusd\n")


def test_version_text():
    assert version_text() == "Version: n/a\nCommit: n/a\nDate: n/a\n"


def test_log_event_formats_pairs(caplog):
    logger = logging.getLogger("tests.cli.events")
    with caplog.at_level(logging.INFO, logger="tests.cli.events"):
        log_event(logger, "UploadFinished", "id", "abc", "size", "3")
    assert caplog.messages == ['event="UploadFinished" id="abc" size="3"']


def test_main_prints_version(capsys):
    assert main(["-version"]) == 0
    assert capsys.readouterr().out == version_text()


def test_main_fails_on_unknown_hook(capsys):
    assert main(["-hooks-enabled-events", "bogus"]) == 1
    assert "Unknown hook event type" in capsys.readouterr().err


def test_main_fails_on_bad_listen_address(capsys):
    assert main(["-host", "127.0.0.1", "-port", "notaport"]) == 1
    assert "Unable to create listener" in capsys.readouterr().err
import logging
from pathlib import Path

from policysync.core.logging_setup import bind, build_logger


def test_logger_creates_files_and_redacts(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    logger = build_logger(
        name="psync_t1",
        run_id="run123",
        action="apply",
        base_dir="logs",
        console_level="INFO",
        file_level="DEBUG",
        extra={"kind": "group"},
    )

    logger.info("hello Authorization: Bearer abc123")
    logger.error("password=secret-x, token: tkn999 | api_key=AKIA123")
    logger.warning("payload=%s", '{"client_secret": "s3cr3t"}')

    app_log = Path("logs/app.log")
    assert app_log.exists()

    dated_dirs = list(Path("logs").glob("20*"))
    assert dated_dirs, "dated directory not created"
    files = list(dated_dirs[0].glob("apply_run123.log"))
    assert files, "per-run log file not created"

    content = app_log.read_text(encoding="utf-8")
    assert "***REDACTED***" in content
    for secret in ("abc123", "secret-x", "tkn999", "AKIA123", "s3cr3t"):
        assert secret not in content
    assert "kind=group" in content

    run_content = files[0].read_text(encoding="utf-8")
    assert "***REDACTED***" in run_content
    assert "tkn999" not in run_content


def test_rotating_file_captures_debug(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    logger = build_logger(name="psync_t2", run_id="r42", action="refresh", base_dir="logs")
    logger.debug("debug-line-42")
    content = Path("logs/app.log").read_text(encoding="utf-8")
    assert "DEBUG" in content and "debug-line-42" in content
    assert "run=r42 action=refresh" in content


def test_module_loggers_reach_the_sinks(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    build_logger(name="psync_t3", run_id="r7", action="plan", base_dir="logs")
    logging.getLogger("psync_t3.http").debug("GET /groups/admins -> 200")
    content = Path("logs/app.log").read_text(encoding="utf-8")
    assert "GET /groups/admins -> 200" in content
    assert "run=- action=-" in content


def test_bind_adds_context(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    logger = build_logger(name="psync_t4", run_id="r8", action="apply", base_dir="logs")
    bind(logger, kind="acl", identity="X1").info("created")
    content = Path("logs/app.log").read_text(encoding="utf-8")
    assert "kind=acl id=X1" in content
    assert "run=r8" in content

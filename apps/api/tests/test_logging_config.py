import json
import logging

from onboardflow_api.logging_config import JSONFormatter, ReadableFormatter, configure_logging


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="onboardflow_api.store",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg="client %s moved",
        args=("c1",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context_fields() -> None:
    payload = json.loads(JSONFormatter().format(_record(client_id="c1", stage="Onboarding")))

    assert payload["message"] == "client c1 moved"
    assert payload["level"] == "INFO"
    assert payload["client_id"] == "c1"
    assert payload["stage"] == "Onboarding"
    assert "task_id" not in payload


def test_readable_formatter_is_single_line() -> None:
    line = ReadableFormatter().format(_record())

    assert "INFO" in line
    assert "onboardflow_api.store: client c1 moved" in line
    assert "\n" not in line


def test_configure_logging_installs_one_handler() -> None:
    configure_logging("debug", "json")
    configure_logging("warning", "json")

    package_logger = logging.getLogger("onboardflow_api")
    assert len(package_logger.handlers) == 1
    assert isinstance(package_logger.handlers[0].formatter, JSONFormatter)
    assert package_logger.level == logging.WARNING

    configure_logging("info", "readable")

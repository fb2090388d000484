"""Unit tests for structured JSON logging."""

from __future__ import annotations

import json
import logging

import pytest

from settlement_service.logging import JSONFormatter, get_logger, setup_logging


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="settlement.services.ledger",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Escrow locked",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.mark.unit
def test_formatter_renders_json_with_extra_fields() -> None:
    line = JSONFormatter().format(_record(task_id="task-1", amount="10.00000000"))

    data = json.loads(line)
    assert data["level"] == "INFO"
    assert data["logger"] == "settlement.services.ledger"
    assert data["message"] == "Escrow locked"
    assert data["extra"] == {"task_id": "task-1", "amount": "10.00000000"}


@pytest.mark.unit
def test_formatter_omits_empty_extra() -> None:
    data = json.loads(JSONFormatter().format(_record()))

    assert "extra" not in data


@pytest.mark.unit
def test_get_logger_maps_module_names_into_service_namespace() -> None:
    assert get_logger("settlement_service.services.ledger").name == "settlement.services.ledger"
    assert get_logger("settlement_service").name == "settlement"


@pytest.mark.unit
def test_setup_logging_writes_daily_file(tmp_path) -> None:
    logger = setup_logging("info", "settlement", str(tmp_path / "logs"))
    try:
        get_logger("settlement_service.tests").info("hello", extra={"k": "v"})
        for handler in logger.handlers:
            handler.flush()

        files = list((tmp_path / "logs").glob("*.log"))
        assert len(files) == 1
        line = files[0].read_text().strip().splitlines()[-1]
        assert json.loads(line)["extra"] == {"k": "v"}
    finally:
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()


@pytest.mark.unit
def test_setup_logging_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        setup_logging("LOUD", "settlement", None)

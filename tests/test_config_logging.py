import logging
from pathlib import Path
from types import SimpleNamespace

import yaml

from contact_directory.common import load_config
from contact_directory.config_loader import load_pipeline_config
from contact_directory.logging_utils import LOG_LEVEL_ENV, configure_logging, parse_level


def _write_config(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = load_pipeline_config(SimpleNamespace())
    assert config.outputs.dir == Path(str(tmp_path))
    assert config.outputs.store_path == Path(str(tmp_path)) / "contacts.json"
    assert config.ingestion.batch_size == 100
    assert config.ingestion.max_rows == 5000
    assert config.ingestion.update_existing is False
    assert config.export.format == "xlsx"
    assert config.export.fields == []
    assert config.logging.level == "WARNING"


def test_yaml_values_and_cli_overrides(tmp_path):
    path = _write_config(
        tmp_path,
        {
            "inputs": {"rows_file": "rows.csv", "header_starts_with": "Sr"},
            "outputs": {"dir": str(tmp_path / "out"), "store_path": str(tmp_path / "db.json")},
            "ingestion": {"batch_size": 50, "max_batch_size": 80, "workers": 2, "update_existing": True},
            "export": {"format": "CSV", "fields": ["name", "phones"]},
            "logging": {"level": "info"},
        },
    )
    config = load_config(SimpleNamespace(config=path, batch_size=25, input=None, log_level=None))
    assert config.inputs.rows_file == "rows.csv"
    assert config.inputs.header_starts_with == "Sr"
    assert config.outputs.store_path == tmp_path / "db.json"
    assert config.ingestion.batch_size == 25
    assert config.ingestion.max_batch_size == 80
    assert config.ingestion.workers == 2
    assert config.ingestion.update_existing is True
    assert config.export.format == "csv"
    assert config.export.fields == ["name", "phones"]
    assert config.logging.level == "INFO"

    overridden = load_config(SimpleNamespace(config=path, store=str(tmp_path / "other.json"), log_level="debug"))
    assert overridden.outputs.store_path == tmp_path / "other.json"
    assert overridden.logging.level == "DEBUG"


def test_empty_yaml_file_is_tolerated(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    config = load_pipeline_config(SimpleNamespace(config=str(path)))
    assert config.ingestion.workers == 1


def test_log_level_precedence(tmp_path, monkeypatch):
    config = load_pipeline_config(SimpleNamespace(config=_write_config(tmp_path, {"logging": {"level": "ERROR"}})))
    root = logging.getLogger()
    previous = root.level
    try:
        monkeypatch.delenv(LOG_LEVEL_ENV, raising=False)
        configure_logging(config)
        assert root.level == logging.ERROR

        configure_logging(config, level_override="debug")
        assert root.level == logging.DEBUG

        monkeypatch.setenv(LOG_LEVEL_ENV, "warning")
        configure_logging(config, level_override="debug")
        assert root.level == logging.WARNING

        monkeypatch.setenv(LOG_LEVEL_ENV, "nonsense")
        configure_logging(config)
        assert root.level == logging.INFO
    finally:
        root.setLevel(previous)


def test_log_file_handler_is_added_once(tmp_path, monkeypatch):
    monkeypatch.delenv(LOG_LEVEL_ENV, raising=False)
    log_path = tmp_path / "logs" / "import.log"
    config = load_pipeline_config(
        SimpleNamespace(config=_write_config(tmp_path, {"logging": {"level": "info"}}), log_file=str(log_path))
    )
    assert config.logging.file == str(log_path)

    root = logging.getLogger()
    before = list(root.handlers)
    previous = root.level
    try:
        assert configure_logging(config) == logging.INFO
        configure_logging(config)
        added = [h for h in root.handlers if isinstance(h, logging.FileHandler) and h not in before]
        assert len(added) == 1
        logging.getLogger("contact_directory.ingestion").info("Import finished")
        added[0].flush()
        assert "Import finished" in log_path.read_text(encoding="utf-8")
    finally:
        for handler in [h for h in root.handlers if h not in before]:
            root.removeHandler(handler)
            handler.close()
        root.setLevel(previous)


def test_parse_level_accepts_numbers_and_names():
    assert parse_level("10") == logging.DEBUG
    assert parse_level(" error ") == logging.ERROR
    assert parse_level(None) == logging.INFO
    assert parse_level("loud") == logging.INFO

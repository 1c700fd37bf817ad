from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore[import-untyped]


@dataclass
class InputsConfig:
    rows_file: Optional[str] = None
    header_starts_with: Optional[str] = None


@dataclass
class OutputsConfig:
    dir: Path
    store_path: Path


@dataclass
class IngestionConfig:
    batch_size: int = 100
    max_batch_size: int = 200
    max_rows: int = 5000
    workers: int = 1
    max_retries: int = 3
    retry_base_delay: float = 0.25
    progress_every: int = 5
    update_existing: bool = False
    skip_validation: bool = False


@dataclass
class ExportConfig:
    format: str = "xlsx"
    fields: list[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    level: str = "WARNING"
    format: Optional[str] = None
    file: Optional[str] = None


@dataclass
class PipelineConfig:
    inputs: InputsConfig
    outputs: OutputsConfig
    ingestion: IngestionConfig
    export: ExportConfig
    logging: LoggingConfig


def _load_yaml(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _pick(args: argparse.Namespace, name: str, section: Dict[str, Any], key: str, default: Any) -> Any:
    value = getattr(args, name, None)
    if value is not None:
        return value
    return section.get(key, default)


def load_pipeline_config(args: argparse.Namespace) -> PipelineConfig:
    config_data = _load_yaml(getattr(args, "config", None))
    inputs_cfg = config_data.get("inputs", {}) or {}
    outputs_cfg = config_data.get("outputs", {}) or {}
    ingestion_cfg = config_data.get("ingestion", {}) or {}
    export_cfg = config_data.get("export", {}) or {}
    logging_cfg = config_data.get("logging", {}) or {}

    inputs = InputsConfig(
        rows_file=getattr(args, "input", None) or inputs_cfg.get("rows_file"),
        header_starts_with=getattr(args, "header_starts_with", None)
        or inputs_cfg.get("header_starts_with"),
    )

    outputs_dir = Path(getattr(args, "out_dir", None) or outputs_cfg.get("dir") or os.getcwd())
    store_path = Path(
        getattr(args, "store", None)
        or outputs_cfg.get("store_path")
        or (outputs_dir / "contacts.json")
    )
    outputs = OutputsConfig(dir=outputs_dir, store_path=store_path)

    ingestion = IngestionConfig(
        batch_size=int(_pick(args, "batch_size", ingestion_cfg, "batch_size", 100)),
        max_batch_size=int(ingestion_cfg.get("max_batch_size", 200)),
        max_rows=int(_pick(args, "max_rows", ingestion_cfg, "max_rows", 5000)),
        workers=int(_pick(args, "workers", ingestion_cfg, "workers", 1)),
        max_retries=int(_pick(args, "max_retries", ingestion_cfg, "max_retries", 3)),
        retry_base_delay=float(ingestion_cfg.get("retry_base_delay", 0.25)),
        progress_every=int(ingestion_cfg.get("progress_every", 5)),
        update_existing=bool(
            getattr(args, "update_existing", None) or ingestion_cfg.get("update_existing", False)
        ),
        skip_validation=bool(
            getattr(args, "skip_validation", None) or ingestion_cfg.get("skip_validation", False)
        ),
    )

    export = ExportConfig(
        format=(getattr(args, "format", None) or export_cfg.get("format") or "xlsx").lower(),
        fields=list(getattr(args, "fields", None) or export_cfg.get("fields") or []),
    )

    arg_level = getattr(args, "log_level", None)
    effective_level = (arg_level or logging_cfg.get("level") or "WARNING").upper()

    return PipelineConfig(
        inputs=inputs,
        outputs=outputs,
        ingestion=ingestion,
        export=export,
        logging=LoggingConfig(
            level=effective_level,
            format=logging_cfg.get("format"),
            file=getattr(args, "log_file", None) or logging_cfg.get("file"),
        ),
    )

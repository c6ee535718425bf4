"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from panel_ops.config import OrchestratorSettings
from panel_ops.orchestrator.registry import HandlerRegistry
from panel_ops.orchestrator.repository import OperationStore
from panel_ops.storage.common import to_db_datetime
from panel_ops.storage.sqlmodel_models import Operation

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_HANDLER_COMMAND = f"{shlex.quote(sys.executable)} -m panel_ops.handlers.echo_handler"


@pytest.fixture()
def store(tmp_path: Path) -> OperationStore:
    operation_store = OperationStore(tmp_path / "operations.db")
    operation_store.init_schema()
    yield operation_store
    operation_store.close()


@pytest.fixture()
def make_settings(tmp_path: Path) -> Callable[..., OrchestratorSettings]:
    def _make(**overrides) -> OrchestratorSettings:
        values = {
            "handlers_config": tmp_path / "operation_types.conf",
            "handler_log_dir": tmp_path / "logs",
            "poll_interval_seconds": 0.01,
            "watchdog_interval_seconds": 0.01,
        }
        values.update(overrides)
        return OrchestratorSettings(**values)

    return _make


@pytest.fixture()
def echo_registry_file(tmp_path: Path, monkeypatch) -> Path:
    """Registry mapping the site/database types to the echo handler."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        f"{SRC_DIR}{os.pathsep}{existing}" if existing else str(SRC_DIR),
    )
    path = tmp_path / "operation_types.conf"
    path.write_text(
        "\n".join(
            [
                "# demo handlers",
                f"site.create={ECHO_HANDLER_COMMAND}",
                f"database.create={ECHO_HANDLER_COMMAND}",
                "",
            ],
        ),
        "utf-8",
    )
    return path


@pytest.fixture()
def echo_registry(echo_registry_file: Path) -> HandlerRegistry:
    return HandlerRegistry.load(echo_registry_file)


def force_processing(
    store: OperationStore,
    operation_id: int,
    *,
    started_at: datetime,
) -> None:
    """Put any row into ``processing`` regardless of source, for stall scenarios."""

    with Session(store.engine) as session:
        session.exec(
            sa_update(Operation)
            .where(col(Operation.id) == operation_id)
            .values(status="processing", started_at=to_db_datetime(started_at)),
        )
        session.commit()

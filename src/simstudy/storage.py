# Copyright (c) Syntropy Systems
"""Persist result records as ``.npz`` files."""
from __future__ import annotations

import contextlib
import io
import json
import logging
import os
import tempfile
from pathlib import Path

import numpy as np

from simstudy.models.model import Model
from simstudy.results import ResultRecord

logger = logging.getLogger(__name__)

META_KEY = "__meta__"
_KEY_SEPARATOR = "__"


def _channel_key(index: int, name: str) -> str:
    return f"r{index}{_KEY_SEPARATOR}{name}"


def write_atomic(path: Path, data: bytes) -> Path:
    """Replace ``path`` with ``data`` through a uniquely named temporary file.

    Each writer gets its own temporary file, so threads and processes
    writing the same path never move each other's files.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            _ = f.write(data)
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise
    return path


class ResultStore:
    """Reads and writes the results of one variant per file.

    A file holds one or more records (delegates may return several).
    Channels are stored as arrays under ``r<index>__<label>``; labels,
    options, varied tags and optionally the model go into a JSON
    ``__meta__`` entry.
    """

    def exists(self, path: str | Path) -> bool:
        return Path(path).is_file()

    def save(
        self,
        records: ResultRecord | list[ResultRecord],
        path: str | Path,
        *,
        store_model: bool = True,
    ) -> Path:
        """Write ``records`` to ``path`` atomically."""
        path = Path(path)
        batch = [records] if isinstance(records, ResultRecord) else list(records)
        arrays: dict[str, np.ndarray] = {}
        metas = []
        for index, record in enumerate(batch):
            for name, value in record.channels.items():
                arrays[_channel_key(index, name)] = np.asarray(value)
            metas.append({
                "labels": record.labels,
                "simulator_options": record.simulator_options,
                "varied": record.varied,
                "sim_id": record.sim_id,
                "duration": record.duration,
                "model": (
                    record.model.model_dump(mode="json") if store_model and record.model else None
                ),
            })
        arrays[META_KEY] = np.array(json.dumps({"records": metas}))

        buffer = io.BytesIO()
        np.savez(buffer, **arrays)
        _ = write_atomic(path, buffer.getvalue())
        for record in batch:
            record.data_file = str(path)
        logger.debug("saved data to %s", path)
        return path

    def load(self, path: str | Path) -> list[ResultRecord]:
        """Read the records written by :meth:`save`."""
        path = Path(path)
        with np.load(path, allow_pickle=False) as data:
            metas = json.loads(data[META_KEY].item())["records"]
            records = []
            for index, meta in enumerate(metas):
                channels = {"time": data[_channel_key(index, "time")]}
                for label in meta["labels"]:
                    if label != "time":
                        channels[label] = data[_channel_key(index, label)]
                model = Model.model_validate(meta["model"]) if meta.get("model") else None
                records.append(
                    ResultRecord(
                        labels=meta["labels"],
                        channels=channels,
                        simulator_options=meta.get("simulator_options") or {},
                        model=model,
                        varied=meta.get("varied") or {},
                        sim_id=meta.get("sim_id"),
                        duration=meta.get("duration"),
                        data_file=str(path),
                    ),
                )
        return records

    def load_outputs(self, path: str | Path, output_variables: list[str]) -> list[np.ndarray]:
        """Read raw solver outputs written by a solver's ``__main__`` entry."""
        with np.load(Path(path), allow_pickle=False) as data:
            return [data[name] for name in output_variables]

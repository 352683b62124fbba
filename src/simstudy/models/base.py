# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for simstudy."""

from __future__ import annotations

from typing import ClassVar, Union

from pydantic import BaseModel, ConfigDict, JsonValue
from typing_extensions import TypeAlias

JSONPrimitive: TypeAlias = Union[str, int, float, bool, None]
JSONValue: TypeAlias = JsonValue
JSONObject: TypeAlias = dict[str, JSONValue]


class SimStudyBaseModel(BaseModel):
    """Base model with shared config for simstudy schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        populate_by_name=True,
    )


class RecordModel(BaseModel):
    """Base model for persisted records, tolerant of extra columns.

    Rows from study databases written by other versions may carry columns
    this version does not know; they are dropped rather than rejected.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )

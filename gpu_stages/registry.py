"""Stage registry: maps record type tags to stage loaders."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO

from gpu_runtime.context import DeviceContext
from gpu_runtime.errors import UnknownStageTypeError
from gpu_stages.serialization import read_int32
from gpu_stages.stage import Stage, StageType

logger = logging.getLogger(__name__)

_STAGE_LOADERS: dict[StageType, type[Stage]] = {}


def register_stage(cls: type[Stage]) -> type[Stage]:
    """Class decorator registering ``cls`` under its ``stage_type`` tag."""
    existing = _STAGE_LOADERS.get(cls.stage_type)
    if existing is not None and existing is not cls:
        raise ValueError(f"Stage type {cls.stage_type.name} already registered to {existing.__name__}")
    _STAGE_LOADERS[cls.stage_type] = cls
    return cls


def registered_stages() -> dict[StageType, type[Stage]]:
    return dict(_STAGE_LOADERS)


def load_stage(stream: BinaryIO, context: DeviceContext | None = None) -> Stage:
    """Read one tagged stage record from ``stream``."""
    tag = read_int32(stream)
    try:
        stage_type = StageType(tag)
        cls = _STAGE_LOADERS[stage_type]
    except (ValueError, KeyError) as e:
        raise UnknownStageTypeError("Unknown stage type tag in model file", {"tag": tag}) from e
    stage = cls.load_from_file(stream, context)
    logger.debug("Loaded %s", stage.name)
    return stage


def load_model(path: str | Path, context: DeviceContext | None = None) -> Stage:
    """Load the root stage record of a model file.

    Nothing is returned unless the whole record (and every nested record) was
    read successfully.
    """
    with open(path, "rb") as f:
        stage = load_stage(f, context)
    logger.info("Loaded model %s (%s)", path, stage.name)
    return stage

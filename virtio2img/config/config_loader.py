# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/config/config_loader.py
from __future__ import annotations

import argparse
import glob
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml

from ..core.utils import U


class Config:
    """
    YAML/JSON config files, merged left to right and applied as argparse
    defaults so that explicit CLI flags always win.

    Keys use the argparse `dest` spelling; dashes are accepted and
    normalized (`virtio-url` == `virtio_url`).
    """

    @staticmethod
    def expand_configs(logger: logging.Logger, paths: List[str]) -> List[Path]:
        out: List[Path] = []
        for raw in paths:
            p = str(Path(raw).expanduser())
            matches = sorted(glob.glob(p)) if any(ch in p for ch in "*?[") else [p]
            if not matches:
                U.die(logger, f"Config glob matched nothing: {raw}", 2)
            for m in matches:
                mp = Path(m)
                if not mp.is_file():
                    U.die(logger, f"Config file not found: {mp}", 2)
                out.append(mp)
        return out

    @staticmethod
    def load_one(logger: logging.Logger, path: Path) -> Dict[str, Any]:
        text = path.read_text(encoding="utf-8")
        try:
            if path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (ValueError, yaml.YAMLError) as e:
            U.die(logger, f"Could not parse config {path}: {e}", 2)
        if data is None:
            return {}
        if not isinstance(data, dict):
            U.die(logger, f"Config {path} must be a mapping at top level, got {type(data).__name__}", 2)
        logger.debug("Loaded config %s (%d keys)", path, len(data))
        return Config.normalize(data)

    @staticmethod
    def normalize(data: Dict[str, Any]) -> Dict[str, Any]:
        return {str(k).replace("-", "_"): v for k, v in data.items()}

    @staticmethod
    def load_many(logger: logging.Logger, paths: List[Path]) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for p in paths:
            merged.update(Config.load_one(logger, p))
        return merged

    @staticmethod
    def apply_as_defaults(logger: logging.Logger, parser: argparse.ArgumentParser, conf: Dict[str, Any]) -> None:
        known = {a.dest for a in parser._actions}
        defaults = {k: v for k, v in conf.items() if k in known}
        unknown = sorted(k for k in conf if k not in known)
        if unknown:
            logger.debug("Config keys without a CLI flag (kept for workflow config): %s", unknown)
        parser.set_defaults(**defaults)

# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/__main__.py
from __future__ import annotations

import argparse
import json
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .cli.args import parse_args_with_config
from .cli.prompt import console_commit_decider
from .core.exceptions import Virtio2ImgError, format_exception_for_cli
from .core.recovery_manager import MountLedger
from .core.utils import U
from .windows import DismInjector, VirtioIsoProvider, WindowsImageMountProvider
from .workflow.controller import ImageWorkflowController
from .workflow.models import WorkflowConfig, WorkflowRequest


def _print_stderr(msg: str) -> None:
    print(msg, file=sys.stderr)


def _safe_log(logger, level: str, msg: str) -> None:
    if logger is None:
        _print_stderr(msg)
        return
    getattr(logger, level)(msg)


def build_config(args: argparse.Namespace, conf: Dict[str, Any]) -> WorkflowConfig:
    """Config-file keys first, parsed args (which already include config defaults) on top."""
    merged: Dict[str, Any] = dict(conf)
    merged.update({k: v for k, v in vars(args).items() if v is not None})
    return WorkflowConfig.from_mapping(merged)


def run(args: argparse.Namespace, conf: Dict[str, Any], logger) -> int:
    cfg = build_config(args, conf)
    U.ensure_dir(cfg.workdir)
    logger.debug("Workflow config: %s", U.json_dump(cfg.__dict__))

    if not args.skip_admin_check:
        U.require_admin(logger)

    ledger = MountLedger(logger, cfg.workdir)
    image_provider = WindowsImageMountProvider(logger, cfg, ledger=ledger)
    stale = image_provider.cleanup_stale()
    if args.cleanup_only:
        logger.info("Stale cleanup finished: %d leftover mount(s) handled", stale)
        return 0

    controller = ImageWorkflowController(
        logger,
        cfg,
        image_provider,
        VirtioIsoProvider(logger, cfg, ledger=ledger),
        DismInjector(logger, cfg),
        decide_commit=console_commit_decider(logger),
    )
    request = WorkflowRequest(
        source=Path(args.source),
        force_unsigned=bool(args.force_unsigned),
        driver_override=Path(args.virtio_iso) if args.virtio_iso else None,
        commit=args.commit,
    )
    result = controller.run(request)

    if args.json_result:
        print(json.dumps(result.to_jsonable(), indent=2))
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    logger: Optional[object] = None
    verbose = 0

    # Phase 1: parse (config errors surface here)
    try:
        args, conf, logger = parse_args_with_config(argv)
        verbose = args.verbose
    except Virtio2ImgError as e:
        _safe_log(logger, "error", f"💥 {format_exception_for_cli(e)}")
        raise SystemExit(e.code)
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        raise SystemExit(130)

    # Phase 2: run workflow (it has already rolled back by the time an error reaches here)
    try:
        rc = run(args, conf, logger)
    except Virtio2ImgError as e:
        _safe_log(logger, "error", f"💥 {format_exception_for_cli(e, verbose=verbose)}")
        for w in e.rollback_warnings:
            _safe_log(logger, "warning", f"⚠️  rollback: {w}")
        if args.json_result:
            print(json.dumps({"ok": False, "error": e.to_dict()}, indent=2))
        rc = e.code
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        rc = 130
    except Exception as e:
        _safe_log(logger, "error", f"💥 UNHANDLED {type(e).__name__}: {e}")
        _safe_log(logger, "debug", traceback.format_exc())
        rc = 1

    raise SystemExit(rc)


if __name__ == "__main__":
    main()

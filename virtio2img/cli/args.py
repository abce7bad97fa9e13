# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/cli/args.py
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from ..config.config_loader import Config
from ..core.exceptions import Fatal
from ..core.logger import c
from ..core.utils import U
from ..workflow.models import DEFAULT_VIRTIO_URL, ImageKind

_EPILOG = """\
Examples:
  virtio2img install.wim --commit
  virtio2img C:\\images\\win2022.vhdx --virtio-iso D:\\isos\\virtio-win.iso --force-unsigned
  virtio2img win10.vhd --config site.yaml --discard -vv --log-file run.log
"""


class HelpFormatter(argparse.ArgumentDefaultsHelpFormatter, argparse.RawDescriptionHelpFormatter):
    pass


def _add_global_config_logging(p: argparse.ArgumentParser) -> None:
    from .. import __version__

    g = p.add_argument_group("config and logging")
    g.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML/JSON config file (repeatable; later overrides earlier).",
    )
    g.add_argument("--dump-config", action="store_true", help="Print merged config and exit.")
    g.add_argument("--dump-args", action="store_true", help="Print final parsed args and exit.")
    g.add_argument("--version", action="version", version=__version__)
    g.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -vv debug, -vvv trace.")
    g.add_argument("-q", "--quiet", action="count", default=0, help="Less output: -q warnings, -qq errors.")
    g.add_argument("--log-file", dest="log_file", default=None, help="Write a full transcript of the run to this file.")
    g.add_argument("--json-logs", dest="json_logs", action="store_true", help="Emit NDJSON log lines.")
    g.add_argument("--json", dest="json_result", action="store_true", help="Print the run result as JSON on stdout.")


def _add_workflow_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("source", nargs="?", default=None, help="Windows image to service (.wim, .vhd or .vhdx).")

    g = p.add_argument_group("drivers")
    g.add_argument(
        "--force-unsigned",
        dest="force_unsigned",
        action="store_true",
        default=False,
        help="Pass /ForceUnsigned to DISM so unsigned driver packages are installed too.",
    )
    g.add_argument(
        "--virtio-iso",
        dest="virtio_iso",
        default=None,
        help="Local VirtIO driver ISO or extracted directory; takes priority over the cache and download.",
    )
    g.add_argument("--virtio-url", dest="virtio_url", default=DEFAULT_VIRTIO_URL, help="Where to download the driver ISO from.")
    g.add_argument("--iso-cache", dest="iso_cache", default=None, help="Cached driver ISO path (default: <workdir>/virtio-win.iso).")
    g.add_argument(
        "--iso-access",
        dest="iso_access",
        choices=["mount", "extract"],
        default="mount",
        help="Attach the ISO with Mount-DiskImage, or extract it into the workdir.",
    )

    g = p.add_argument_group("image")
    g.add_argument("--wim-index", dest="wim_index", type=int, default=1, help="Image index inside a WIM file.")
    g.add_argument("--workdir", default=None, help="Working directory for working copies, mounts, cache and logs.")

    commit = g.add_mutually_exclusive_group()
    commit.add_argument("--commit", dest="commit", action="store_const", const=True, help="Save changes without asking.")
    commit.add_argument("--discard", dest="commit", action="store_const", const=False, help="Drop changes without asking.")
    p.set_defaults(commit=None)

    g.add_argument(
        "--cleanup-only",
        dest="cleanup_only",
        action="store_true",
        help="Only clean up mounts left behind by an interrupted run, then exit.",
    )
    g.add_argument(
        "--skip-admin-check",
        dest="skip_admin_check",
        action="store_true",
        help="Do not require an elevated shell (DISM will still refuse without one).",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="virtio2img",
        description=c("virtio2img: inject VirtIO drivers into offline Windows images", "green", ["bold"]),
        formatter_class=HelpFormatter,
        epilog=_EPILOG,
    )
    _add_global_config_logging(p)
    _add_workflow_flags(p)
    return p


def _build_preparser() -> argparse.ArgumentParser:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", action="append", default=[])
    pre.add_argument("-v", "--verbose", action="count", default=0)
    pre.add_argument("-q", "--quiet", action="count", default=0)
    pre.add_argument("--log-file", dest="log_file", default=None)
    pre.add_argument("--json-logs", dest="json_logs", action="store_true")
    pre.add_argument("--dump-config", action="store_true")
    pre.add_argument("--dump-args", action="store_true")
    return pre


def validate_args(args: argparse.Namespace) -> None:
    if args.cleanup_only:
        return
    if not args.source:
        raise Fatal(code=2, msg="A source image is required (positional SOURCE or `source:` in config).")
    # Extension check happens again in the workflow; failing here keeps typos out of the log transcript.
    ImageKind.from_path(Path(args.source))
    if args.wim_index < 1:
        raise Fatal(code=2, msg=f"--wim-index must be >= 1, got {args.wim_index}")


def parse_args_with_config(
    argv: Optional[Sequence[str]] = None,
    logger: Any = None,
) -> Tuple[argparse.Namespace, Dict[str, Any], Any]:
    """
      Phase 0: parse only the flags needed to locate config and set up logging
      Phase 1: load + merge config files
      Phase 2: apply config as parser defaults
      Phase 3: full parse (CLI overrides config)
      Phase 4: validate
    """
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)

    parser = build_parser()
    args0, _rest = _build_preparser().parse_known_args(argv)

    if logger is None:
        from ..core.logger import Log

        logger = Log.setup(args0.verbose, args0.log_file, quiet=args0.quiet, json_logs=args0.json_logs)

    conf: Dict[str, Any] = {}
    if args0.config:
        conf = Config.load_many(logger, Config.expand_configs(logger, list(args0.config)))

    if args0.dump_config:
        print(U.json_dump(conf))
        raise SystemExit(0)

    Config.apply_as_defaults(logger, parser, conf)
    args = parser.parse_args(argv)

    if args0.dump_args:
        print(U.json_dump(vars(args)))
        raise SystemExit(0)

    validate_args(args)
    return args, conf, logger

# virtio2img/cli/__init__.py
from .args import build_parser, parse_args_with_config
from .prompt import console_commit_decider

__all__ = ["build_parser", "console_commit_decider", "parse_args_with_config"]

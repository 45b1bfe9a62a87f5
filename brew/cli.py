#!/usr/bin/env python3
"""Command line entry point: ``brew <command> [flags]``."""

from __future__ import annotations

import argparse
import sys
from typing import Optional
from typing import Sequence

from brew import commands
from brew.errors import BrewError
from brew.errors import OutputDirectoryError
from brew.errors import UnsupportedTransportError
from brew.logging import get_logger
from brew.logging import setup_logging


logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="brew",
        description="command line brew",
        usage="brew <command> [flags]",
        epilog="commands:\n" + commands.command_help(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("command", nargs="?", help="command to run")

    placement = parser.add_argument_group("devices and definitions")
    placement.add_argument(
        "--gpu",
        type=str,
        default="",
        help="Run on the given device ids separated by ','; 'all' uses every device. "
        "The effective training batch size is multiplied by the number of devices.",
    )
    placement.add_argument("--solver", type=str, default="", help="Solver definition YAML file")
    placement.add_argument("--model", type=str, default="", help="Net definition YAML file")
    placement.add_argument(
        "--phase",
        type=str,
        default="",
        help="Net phase (TRAIN or TEST); only used by 'time'",
    )
    placement.add_argument("--level", type=int, default=0, help="Net level")
    placement.add_argument(
        "--stage",
        type=str,
        default="",
        help="Net stages (not to be confused with phase), separated by ','",
    )

    restore = parser.add_argument_group("restore and scoring")
    restore.add_argument("--snapshot", type=str, default="", help="Solver snapshot to resume training")
    restore.add_argument(
        "--weights",
        type=str,
        default="",
        help="Pretrained weights to initialize finetuning, separated by ','. "
        "Cannot be set simultaneously with --snapshot.",
    )
    restore.add_argument("--iterations", type=int, default=50, help="Number of iterations to run")
    restore.add_argument("--detection", action="store_true", help="Score detection outputs as mAP")
    restore.add_argument("--forward_only", action="store_true", help="Only time the forward pass")

    signals = parser.add_argument_group("signals")
    signals.add_argument(
        "--sigint_effect",
        type=str,
        default="stop",
        help="Action on SIGINT: snapshot, stop or none",
    )
    signals.add_argument(
        "--sighup_effect",
        type=str,
        default="snapshot",
        help="Action on SIGHUP: snapshot, stop or none",
    )

    multinode = parser.add_argument_group("multinode")
    multinode.add_argument(
        "--param_server",
        type=str,
        default="",
        help="Triggers multinode mode over the named transport (gloo or nccl)",
    )
    multinode.add_argument(
        "--listen_address",
        type=str,
        default="",
        help="Bind address (host:port) of the data server",
    )
    multinode.add_argument(
        "--comm_threads",
        type=int,
        default=1,
        help="Number of threads used by communication code",
    )

    verify = parser.add_argument_group("verification")
    verify.add_argument("--collect_dir", type=str, default="collect_out", help="Directory with reference dumps")
    verify.add_argument("--compare_output_dir", type=str, default="compare_out", help="Directory for compare output")
    verify.add_argument("--epsilon", type=float, default=1e-3, help="Layer output comparison tolerance")

    logging_group = parser.add_argument_group("logging")
    logging_group.add_argument("--log_level", type=str, default="INFO", help="Logging level")
    logging_group.add_argument("--log_file", type=str, default=None, help="Also append logs to this file")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(log_level=args.log_level, log_file=args.log_file)

    if not args.command:
        parser.print_help()
        return 0

    try:
        command = commands.get_command(args.command)
        return command(args)
    except (UnsupportedTransportError, OutputDirectoryError) as exc:
        logger.error("%s", exc)
        return 1
    except (BrewError, ValueError) as exc:
        logger.error("%s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())

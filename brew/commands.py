"""
Commands of the ``brew`` tool.

Each command takes the parsed ``argparse.Namespace`` and returns a process exit code. Commands are
registered by name with ``@register_command``; errors propagate to ``brew.cli.main``.
"""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass
from typing import Callable
from typing import Optional

import torch
from tqdm import tqdm

from brew.config import NetState
from brew.config import load_net_definition
from brew.config import parse_phase
from brew.config import parse_stages
from brew.detection import DetectionEvaluator
from brew.distributed.device import device_query as query_devices
from brew.distributed.device import resolve_devices
from brew.distributed.device import torch_devices
from brew.errors import ConfigurationError
from brew.errors import UnknownCommandError
from brew.logging import get_logger
from brew.net import Net
from brew.runtime.lifecycle import SolverLifecycle
from brew.runtime.lifecycle import SolverRequest
from brew.runtime.lifecycle import split_weights
from brew.runtime.signals import SignalHandler
from brew.runtime.signals import parse_signal_effect
from brew.runtime.strategy import select_strategy
from brew.verify import harness
from brew.verify.comparator import log_report


logger = get_logger(__name__)

CommandFn = Callable[[argparse.Namespace], int]


@dataclass(frozen=True)
class Command:
    name: str
    help: str
    fn: CommandFn


COMMANDS: dict[str, Command] = {}


def register_command(name: str, help: str) -> Callable[[CommandFn], CommandFn]:
    """Register ``fn`` as the ``brew <name>`` command."""

    def _register(fn: CommandFn) -> CommandFn:
        if name in COMMANDS:
            raise ValueError(f"Command registered twice: {name}")
        COMMANDS[name] = Command(name=name, help=help, fn=fn)
        return fn

    return _register


def get_command(name: str) -> CommandFn:
    command = COMMANDS.get(name)
    if command is None:
        available = "\n".join(f"\t{known}" for known in sorted(COMMANDS))
        raise UnknownCommandError(f"Unknown action: {name}\nAvailable actions:\n{available}")
    return command.fn


# --------------------------------------------------------------------------------------
# Shared helpers
# --------------------------------------------------------------------------------------


def _solver_request(args: argparse.Namespace) -> SolverRequest:
    return SolverRequest(
        solver=args.solver,
        gpu=args.gpu,
        snapshot=args.snapshot,
        weights=args.weights,
        stage=args.stage,
        level=args.level,
    )


def _single_device(args: argparse.Namespace) -> torch.device:
    devices = resolve_devices(args.gpu)
    device = torch_devices(devices)[0]
    if devices:
        logger.info("Use GPU with device ID %d", devices[0])
    else:
        logger.info("Use CPU.")
    return device


def _build_net(args: argparse.Namespace, phase: str, device: torch.device) -> Net:
    if not args.model:
        raise ConfigurationError("Need a model definition (--model)")
    state = NetState(phase=phase, level=args.level, stages=parse_stages(args.stage))
    return Net(load_net_definition(args.model), state, device=device)


def _cuda_sync(device: torch.device) -> Callable[[], None]:
    if device.type == "cuda":
        return lambda: torch.cuda.synchronize(device)
    return lambda: None


# --------------------------------------------------------------------------------------
# Commands
# --------------------------------------------------------------------------------------


@register_command("device_query", "show GPU diagnostic information")
def device_query(args: argparse.Namespace) -> int:
    query_devices(resolve_devices(args.gpu))
    return 0


@register_command("train", "train or finetune a model")
def train(args: argparse.Namespace) -> int:
    sigint_effect = parse_signal_effect(args.sigint_effect)
    sighup_effect = parse_signal_effect(args.sighup_effect)

    lifecycle = SolverLifecycle(_solver_request(args))
    lifecycle.configure()
    strategy = select_strategy(
        lifecycle.devices,
        args.param_server or None,
        args.comm_threads,
        log_level=args.log_level,
        log_file=args.log_file,
    )

    logger.info("Starting Optimization")
    with SignalHandler(sigint_effect, sighup_effect) as handler:
        lifecycle.initialize(handler.get_requested_action)
        state = lifecycle.run(strategy)
    logger.info("Optimization finished: %s", state.value)
    return 0


@register_command("data_server", "run data server - remote data source")
def data_server(args: argparse.Namespace) -> int:
    from brew.distributed.data_server import DataServer

    sigint_effect = parse_signal_effect(args.sigint_effect)
    sighup_effect = parse_signal_effect(args.sighup_effect)
    if not args.listen_address:
        raise ConfigurationError("data_server requires --listen_address")

    lifecycle = SolverLifecycle(_solver_request(args))
    solver = lifecycle.configure()
    with SignalHandler(sigint_effect, sighup_effect) as handler:
        lifecycle.initialize(handler.get_requested_action)
        DataServer(solver, args.listen_address, args.comm_threads).run()
    return 0


def score_net(net: Net, iterations: int) -> dict[str, float]:
    """Mean of every scalar of every output blob over ``iterations`` forward passes."""
    names: list[str] = []
    totals: list[float] = []
    loss = 0.0
    for iteration in tqdm(range(iterations), desc="Testing"):
        loss += net.forward()
        position = 0
        for name, blob in net.output_blobs:
            for value in blob.data.detach().reshape(-1).tolist():
                if iteration == 0:
                    names.append(name)
                    totals.append(value)
                else:
                    totals[position] += value
                logger.info("Batch %d, %s = %g", iteration, name, value)
                position += 1

    logger.info("Loss: %g", loss / max(1, iterations))
    means: dict[str, float] = {}
    for position, (name, total) in enumerate(zip(names, totals)):
        mean = total / iterations
        key = name if names.count(name) == 1 else f"{name}[{position - names.index(name)}]"
        weight = net.blob_loss_weights.get(name, 0.0)
        if weight:
            logger.info("%s = %g (* %g = %g loss)", key, mean, weight, weight * mean)
        else:
            logger.info("%s = %g", key, mean)
        means[key] = mean
    return means


def score_detection(net: Net, iterations: int) -> dict[str, float]:
    """mAP of every detection-evaluation output blob over ``iterations`` forward passes."""
    evaluator = DetectionEvaluator()
    for _ in tqdm(range(iterations), desc="Testing"):
        net.forward()
        for index, (_, blob) in enumerate(net.output_blobs):
            evaluator.update(index, blob.data)

    results: dict[str, float] = {}
    outputs = net.output_blobs
    for index, mean_ap in evaluator.results().items():
        name = outputs[index][0]
        logger.info("    Test net output #%d: %s = %g", index, name, mean_ap)
        results[name] = mean_ap
    return results


@register_command("test", "score a model")
def test(args: argparse.Namespace) -> int:
    if not args.model:
        raise ConfigurationError("Need a model definition to score (--model)")
    if not args.weights:
        raise ConfigurationError("Need model weights to score (--weights)")

    net = _build_net(args, "TEST", _single_device(args))
    for source in split_weights(args.weights):
        net.copy_trained_layers_from(source)
    logger.info("Running for %d iterations.", args.iterations)

    if args.detection:
        score_detection(net, args.iterations)
    else:
        score_net(net, args.iterations)
    return 0


def benchmark(net: Net, iterations: int, forward_only: bool = False) -> dict[str, float]:
    """Average per-layer forward/backward wall time in milliseconds."""
    device = net.device
    sync = _cuda_sync(device)
    count = len(net.layers)

    logger.info("Performing Forward")
    initial_loss = net.forward()
    logger.info("Initial loss: %g", initial_loss)
    if not forward_only:
        logger.info("Performing Backward")
        net.backward()

    forward_ms = [0.0] * count
    backward_ms = [0.0] * count
    forward_total = 0.0
    backward_total = 0.0
    logger.info("*** Benchmark begins ***")
    logger.info("Testing for %d iterations.", iterations)
    total_start = time.perf_counter()
    for _ in tqdm(range(iterations), desc="Benchmark"):
        pass_start = time.perf_counter()
        for index in range(count):
            start = time.perf_counter()
            net.forward_layer(index)
            sync()
            forward_ms[index] += (time.perf_counter() - start) * 1000.0
        forward_total += (time.perf_counter() - pass_start) * 1000.0

        if not forward_only:
            net.clear_param_diffs()
            pass_start = time.perf_counter()
            for index in reversed(range(count)):
                start = time.perf_counter()
                net.backward_layer(index)
                sync()
                backward_ms[index] += (time.perf_counter() - start) * 1000.0
            backward_total += (time.perf_counter() - pass_start) * 1000.0
    total_ms = (time.perf_counter() - total_start) * 1000.0

    divisor = max(1, iterations)
    logger.info("Average time per layer: ")
    for layer, fwd, bwd in zip(net.layers, forward_ms, backward_ms):
        logger.info("%10s\tforward: %.4f ms.", layer.name, fwd / divisor)
        if not forward_only:
            logger.info("%10s\tbackward: %.4f ms.", layer.name, bwd / divisor)

    summary = {"forward": forward_total / divisor, "total": total_ms}
    logger.info("Average Forward pass: %.4f ms.", summary["forward"])
    if not forward_only:
        summary["backward"] = backward_total / divisor
        summary["forward_backward"] = total_ms / divisor
        logger.info("Average Backward pass: %.4f ms.", summary["backward"])
        logger.info("Average Forward-Backward: %.4f ms.", summary["forward_backward"])
    logger.info("Total Time: %.4f ms.", total_ms)
    logger.info("*** Benchmark ends ***")
    return summary


@register_command("time", "benchmark model execution time")
def time_command(args: argparse.Namespace) -> int:
    phase = parse_phase(args.phase, "TRAIN")
    net = _build_net(args, phase, _single_device(args))
    benchmark(net, args.iterations, forward_only=args.forward_only)
    return 0


@register_command("collect", "collects layer data on specified device")
def collect(args: argparse.Namespace) -> int:
    device = _single_device(args)
    net = _build_net(args, "TRAIN", device)
    harness.collect(net, args.collect_dir, use_gpu=device.type == "cuda")
    return 0


@register_command("compare", "collects layer data using inputs from other device")
def compare(args: argparse.Namespace) -> int:
    device = _single_device(args)
    net = _build_net(args, "TRAIN", device)
    report = harness.compare(
        net,
        args.collect_dir,
        args.compare_output_dir,
        use_gpu=device.type == "cuda",
        epsilon=args.epsilon,
    )
    log_report(report)
    return 0


def command_help(width: Optional[int] = None) -> str:
    width = width or max(len(name) for name in COMMANDS) + 4
    return "\n".join(f"  {name:<{width}}{COMMANDS[name].help}" for name in COMMANDS)

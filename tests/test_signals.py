"""Unit tests for signal-driven solver actions."""

from __future__ import annotations

import signal

import pytest

from brew.errors import ConfigurationError
from brew.runtime.signals import SignalHandler
from brew.runtime.signals import SolverAction
from brew.runtime.signals import parse_signal_effect


def test_parse_signal_effect() -> None:
    assert parse_signal_effect("stop") is SolverAction.STOP
    assert parse_signal_effect("snapshot") is SolverAction.SNAPSHOT
    assert parse_signal_effect("none") is SolverAction.NONE
    with pytest.raises(ConfigurationError, match="Invalid signal effect 'pause'"):
        parse_signal_effect("pause")


def test_action_codes_round_trip() -> None:
    for action in SolverAction:
        assert SolverAction.from_code(action.value) is action
    assert SolverAction.from_code(42) is SolverAction.UNKNOWN


def test_signals_map_to_pending_actions() -> None:
    with SignalHandler(SolverAction.STOP, SolverAction.SNAPSHOT) as handler:
        assert handler.get_requested_action() is SolverAction.NONE

        signal.raise_signal(signal.SIGINT)
        assert handler.get_requested_action() is SolverAction.STOP
        # Reading the action clears it.
        assert handler.get_requested_action() is SolverAction.NONE

        if hasattr(signal, "SIGHUP"):
            signal.raise_signal(signal.SIGHUP)
            assert handler.get_requested_action() is SolverAction.SNAPSHOT


def test_later_signal_replaces_unread_one() -> None:
    with SignalHandler(SolverAction.SNAPSHOT, SolverAction.STOP) as handler:
        signal.raise_signal(signal.SIGINT)
        if hasattr(signal, "SIGHUP"):
            signal.raise_signal(signal.SIGHUP)
            assert handler.get_requested_action() is SolverAction.STOP
        else:
            assert handler.get_requested_action() is SolverAction.SNAPSHOT


def test_none_effect_ignores_the_signal() -> None:
    with SignalHandler(SolverAction.NONE, SolverAction.NONE) as handler:
        signal.raise_signal(signal.SIGINT)
        assert handler.get_requested_action() is SolverAction.NONE


def test_previous_handlers_are_restored() -> None:
    calls: list[int] = []

    def previous(signum, frame) -> None:
        calls.append(signum)

    original = signal.signal(signal.SIGINT, previous)
    try:
        with SignalHandler(SolverAction.STOP, SolverAction.SNAPSHOT):
            assert signal.getsignal(signal.SIGINT) is not previous
        assert signal.getsignal(signal.SIGINT) is previous
        signal.raise_signal(signal.SIGINT)
        assert calls == [signal.SIGINT]
    finally:
        signal.signal(signal.SIGINT, original)


def test_unknown_is_not_a_valid_effect() -> None:
    with pytest.raises(ConfigurationError, match="Unsupported signal effect"):
        SignalHandler(SolverAction.UNKNOWN, SolverAction.NONE)

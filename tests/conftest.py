"""
Pytest configuration and fixtures for cycletrader tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from pathlib import Path

    from infra.metrics import MetricsRecorder

    # Stale lock from an aborted runner test would block the next one
    lock_file = Path("data/cycletrader.pid")
    if lock_file.exists():
        lock_file.unlink()

    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()

    if lock_file.exists():
        lock_file.unlink()


@pytest.fixture
def policy_dict():
    """Minimal valid policy used by config and runner tests."""
    return {
        "market_data": {"universe": ["BTC", "ETH"], "max_workers": 2},
        "selection": {"top_k": 2},
        "entries": {"min_confidence": 0.6, "max_open_positions": 5, "default_leverage": 5},
        "circuit_breaker": {"daily_loss_limit_pct": 5.0, "consecutive_losses_limit": 3},
        "reconciliation": {"enabled": False},
    }

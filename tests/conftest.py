"""Fixtures shared by chart-sync tests."""

from pathlib import Path

import pytest

from chart_sync.chart import Chart, load_chart

CHART_DIR = Path("tests/testdata/chart")


@pytest.fixture(name="chart")
async def chart_fixture() -> Chart:
    """Fixture for the chart used across tests."""
    return await load_chart(CHART_DIR)

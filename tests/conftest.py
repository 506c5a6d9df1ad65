import pytest

from hmpi_calculator import HMPICalculator, MetalMeasurement, WHO_STANDARDS, EPA_STANDARDS


@pytest.fixture
def who_calculator() -> HMPICalculator:
    return HMPICalculator(WHO_STANDARDS)


@pytest.fixture
def epa_calculator() -> HMPICalculator:
    return HMPICalculator(EPA_STANDARDS)


@pytest.fixture
def arsenic_sample():
    """Single As reading at twice the WHO guideline value."""
    return [MetalMeasurement(metal="As", concentration=0.02, unit="mg/L")]


@pytest.fixture
def client():
    """
    Flask test client with the default service settings restored
    after each test.
    """
    from app import app

    saved = dict(app.config)
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client
    app.config.clear()
    app.config.update(saved)

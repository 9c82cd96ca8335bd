import pytest

from scanbot.error_handling import reset_all_circuit_breakers


@pytest.fixture(autouse=True)
def _reset_breakers():
    """Circuit breakers são globais: cada teste começa com todos fechados."""
    reset_all_circuit_breakers()
    yield
    reset_all_circuit_breakers()

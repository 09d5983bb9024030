import os
import pathlib
import sys
from typing import Any, Callable

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import carsharing`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from carsharing.actuator import SimulatedActuator  # noqa: E402
from carsharing.authority import MockPermissionAuthority  # noqa: E402
from carsharing.config import ConfigManager  # noqa: E402
from carsharing.ingress import CarContext  # noqa: E402
from carsharing.protocol import InMemoryChannel  # noqa: E402
from carsharing.security import SignatureVerifier, address_of  # noqa: E402

# Fixed wall clock shared by every envelope built in the suite.
NOW = 1_700_000_000
CAR_ACCOUNT = "0x" + "ca" * 20

OWNER_KEY = "0x" + "11" * 32
RENTER_KEY = "0x" + "22" * 32
STRANGER_KEY = "0x" + "33" * 32


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless CARSHARING_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('CARSHARING_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set CARSHARING_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _fresh_config():
    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def owner_address() -> str:
    return address_of(OWNER_KEY)


@pytest.fixture
def renter_address() -> str:
    return address_of(RENTER_KEY)


@pytest.fixture
def stranger_address() -> str:
    return address_of(STRANGER_KEY)


@pytest.fixture
def make_ctx() -> Callable[..., CarContext]:
    """Factory for a CarContext wired to in-memory doubles and a frozen clock."""
    def factory(
        authority: Any = None,
        actuator: Any = None,
        ttl_seconds: int = 3600,
        **overrides: Any,
    ) -> CarContext:
        return CarContext(
            account=CAR_ACCOUNT,
            actuator=actuator if actuator is not None else SimulatedActuator(),
            authority=authority if authority is not None else MockPermissionAuthority(),
            channel=InMemoryChannel(CAR_ACCOUNT),
            verifier=SignatureVerifier(ttl_seconds, clock=lambda: NOW),
            car_info=overrides.pop("car_info", {"name": "OakenTestCar"}),
            **overrides,
        )
    return factory

import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import custody`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from custody.config import CustodyConfig  # noqa: E402
from custody.machine import create_reference_machine  # noqa: E402
from custody.policy import AllowAllPolicy  # noqa: E402
from custody.registry import CustodyDomain  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('CUSTODY_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set CUSTODY_RUN_SLOW=1 to enable'))


@pytest.fixture
def machine():
    """State machine wired to a fresh reference ledger with generated keys."""
    return create_reference_machine(CustodyConfig(commit_timeout_seconds=5.0))


@pytest.fixture
def types(machine):
    return machine.types


@pytest.fixture
def allow_all(machine):
    return AllowAllPolicy(machine.config.withdraw_policy_id)


@pytest.fixture
def kiosk_asset(machine):
    """An asset minted by the issuer and deposited into the custodial wallet's kiosk."""
    kiosk = machine.create_kiosk(CustodyDomain.CUSTODIAL_WALLET)
    machine.grant_deposit(kiosk.kiosk_id, CustodyDomain.ISSUER)
    asset = machine.mint(machine.mint_capability)
    machine.deposit(asset.asset_id, kiosk.kiosk_id, depositor=CustodyDomain.ISSUER)
    return asset, kiosk

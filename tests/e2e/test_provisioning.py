from __future__ import annotations

import pytest
from pytest_bdd import scenarios

from tests.unit.fake_postgres_utils import requires_posix


pytest_plugins = ["tests.e2e.provisioning_fixtures", "tests.e2e.provisioning_steps"]

pytestmark = [pytest.mark.e2e, requires_posix]

scenarios("provisioning.feature")

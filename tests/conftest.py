"""Test configuration for pytest.

This module imports fixtures that should be available to all tests.
"""

# Import fixtures
from tests.fixtures.common import (  # noqa
    fake_rpc,
    payer,
    runtime_options,
    runtime,
    program,
)

import logging

import pytest


@pytest.fixture(autouse=True)
def reset_logger():
    """main() installs its own handler; give every test the default logger back."""
    logger = logging.getLogger("onelogin_aws")
    yield
    logger.handlers[:] = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)

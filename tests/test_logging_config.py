import logging

import pytest

from clg_mcp.core.logging_config import SensitiveDataFilter, setup_logging, setup_logging_from_config
from clg_mcp.security.utils import MASK, mask_sensitive_data


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging replaces root handlers; put the originals back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)

# --- mask_sensitive_data ---

def test_mask_dict_keys():
    masked = mask_sensitive_data({'token': 'abc', 'nested': {'api_key': 'k', 'name': 'n'}, 'list': [{'password': 'p'}]})
    assert masked == {'token': MASK, 'nested': {'api_key': MASK, 'name': 'n'}, 'list': [{'password': MASK}]}


def test_mask_bearer_and_inline_secrets():
    assert mask_sensitive_data("Authorization: Bearer abc.def") == f"Authorization: Bearer {MASK}"
    assert mask_sensitive_data("token=abc other=1") == f"token={MASK} other=1"


def test_mask_leaves_other_values():
    assert mask_sensitive_data(42) == 42
    assert mask_sensitive_data(("a", "secret: s")) == ("a", f"secret: {MASK}")

# --- SensitiveDataFilter ---

def test_filter_masks_message_and_args():
    record = logging.LogRecord("clg_mcp", logging.INFO, __file__, 1, "header %s", ("Bearer s3cret",), None)
    assert SensitiveDataFilter().filter(record) is True
    assert record.getMessage() == f"header Bearer {MASK}"

    record = logging.LogRecord("clg_mcp", logging.INFO, __file__, 1, "token=s3cret", None, None)
    SensitiveDataFilter().filter(record)
    assert "s3cret" not in record.getMessage()

# --- setup ---

def test_setup_logging_installs_filtered_handler():
    setup_logging('DEBUG')
    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert any(isinstance(f, SensitiveDataFilter) for f in root.handlers[0].filters)


def test_setup_logging_from_config(tmp_path):
    log_file = tmp_path / "server.log"
    setup_logging_from_config({
        'level': 'INFO',
        'mask_sensitive': False,
        'handlers': [
            {'type': 'StreamHandler', 'level': 'WARNING'},
            {'type': 'FileHandler', 'filename': str(log_file)},
            {'type': 'SyslogHandler'},
        ],
    })
    root = logging.getLogger()
    assert len(root.handlers) == 2
    assert root.handlers[0].level == logging.WARNING
    assert isinstance(root.handlers[1], logging.FileHandler)
    assert not root.handlers[1].filters
    root.handlers[1].close()

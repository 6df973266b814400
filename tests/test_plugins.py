"""Tests for backend import-string resolution."""

from collections import OrderedDict

import pytest

from qubic_link.errors import ConfigurationError
from qubic_link.format_utils import shorten
from qubic_link.plugins import load_factory, load_instance


def test_unset_backend() -> None:
    assert load_factory(None) is None
    assert load_instance("") is None


def test_resolves_callable() -> None:
    assert load_factory("qubic_link.format_utils:shorten") is shorten


def test_instance_is_constructed() -> None:
    assert isinstance(load_instance("collections:OrderedDict"), OrderedDict)


def test_missing_module() -> None:
    with pytest.raises(ConfigurationError, match="Unable to load backend"):
        load_factory("qubic_link_missing_backend:factory")


def test_not_callable() -> None:
    with pytest.raises(ConfigurationError, match="is not callable"):
        load_factory("qubic_link.pairing:QUBIC_CHAIN_ID")


def test_factory_failure() -> None:
    with pytest.raises(ConfigurationError, match="failed to initialize"):
        load_instance("qubic_link.errors:ProtocolError")

"""Tests for the exception hierarchy and structured error text."""

import pytest

from sysguard import exceptions
from sysguard.exceptions import ApplyError, BackendError, RestoreError, SysguardError


@pytest.mark.parametrize("name", exceptions.__all__)
def test_every_exported_name_is_a_sysguard_error(name):
    assert issubclass(getattr(exceptions, name), SysguardError)


def test_backend_errors():
    subclasses = {cls.__name__ for cls in BackendError.__subclasses__()}
    assert subclasses == {"BackendNotFoundError", "ApplyError"}
    assert ApplyError("x", unsupported_keys=["a.b"]).unsupported_keys == ["a.b"]


def test_restore_error_is_structured():
    error = RestoreError("permission denied", source="/etc/resolv.conf", backup_path="/b/1")
    text = str(error)
    assert "What happened:" in text
    assert "/b/1" in text
    assert "sysguard restore <backup directory>" in error.how_to_fix

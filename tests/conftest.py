"""Fixtures shared by the cross-package tests."""

from tssh.conftest import home, make_context, ssh_dir, stream  # noqa: F401

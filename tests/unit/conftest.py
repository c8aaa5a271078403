"""Shared fixtures for mesh operator unit tests."""

import pytest

from mesh_operator.observability.events import EventRecorder
from mesh_operator.runtime import build_control_plane, set_control_plane
from mesh_operator.services.reconciler import InMemoryWorkloadStore
from mesh_operator.utils.secret_manager import InMemorySecretSink
from mesh_operator.utils.secret_store import InMemorySecretStore


@pytest.fixture
def events():
    """A fresh event recorder, isolated from the process-wide one."""
    return EventRecorder()


@pytest.fixture
def workload_store():
    return InMemoryWorkloadStore()


@pytest.fixture
def secret_sink():
    return InMemorySecretSink()


@pytest.fixture
def secret_store():
    return InMemorySecretStore("vault")


@pytest.fixture
def control_plane(workload_store, secret_sink, secret_store):
    """A dry-run control plane installed as the process-wide instance."""
    plane = build_control_plane(
        dry_run=True,
        workload_store=workload_store,
        secret_writer=secret_sink,
        secret_stores={"vault": secret_store},
    )
    set_control_plane(plane)
    yield plane
    set_control_plane(None)

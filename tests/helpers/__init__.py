"""Shared test helpers for the attofleet test suite."""

from __future__ import annotations

from tests.helpers.fakes import FakePRService, FakeRunner, RecordingNotifier, RunnerFactoryStub

__all__ = ["FakePRService", "FakeRunner", "RecordingNotifier", "RunnerFactoryStub"]

"""Smoke tests to verify test infrastructure works.

These tests verify that the basic test infrastructure is functioning:
- Package imports work
- Async tests work
- Fixtures are available
"""

import pytest


class TestPackageImports:
    """Verify that core packages can be imported."""

    def test_import_taskmail(self):
        """Test that the main package can be imported."""
        import taskmail

        assert taskmail.__version__ == "0.1.0"

    def test_import_services(self):
        from taskmail import services

        assert services.JobStoreService is not None
        assert services.NotificationService is not None

    def test_import_worker(self):
        from taskmail.worker import Worker, WorkerConfig, run

        assert callable(run)
        assert Worker is not None
        assert WorkerConfig is not None

    def test_models_registered(self):
        from taskmail.db.models import Base

        assert "notification_jobs" in Base.metadata.tables


class TestAsyncInfrastructure:
    """Verify that async test infrastructure works."""

    @pytest.mark.asyncio
    async def test_async_works(self):
        import asyncio

        await asyncio.sleep(0.001)

    @pytest.mark.asyncio
    async def test_rate_gate_fixture(self, no_rate_gate):
        await no_rate_gate.acquire()

"""Unit tests for backend selection."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from ckg.exceptions import BackendUnavailableError, ConfigurationError
from ckg.storage.factory import select_store
from ckg.storage.local_store import LocalGraphStore


def native_mock(connect):
    native = AsyncMock()
    native.source = "native"
    native.connect = connect
    return native


class TestSelectStore:
    """Test the one-shot probe and fallback."""

    @pytest.mark.anyio
    async def test_disabled_uses_local(self, settings):
        """Test Dgraph is not probed when disabled."""
        with patch("ckg.storage.factory.DgraphStore") as dgraph_cls:
            store = await select_store(settings)

        dgraph_cls.assert_not_called()
        assert isinstance(store, LocalGraphStore)
        assert store.path == settings.local_db_path

    @pytest.mark.anyio
    async def test_native_selected(self, settings):
        """Test a healthy Dgraph is selected."""
        settings.dgraph_enabled = True
        native = native_mock(AsyncMock())

        with patch("ckg.storage.factory.DgraphStore", return_value=native):
            store = await select_store(settings)

        assert store is native
        native.close.assert_not_called()

    @pytest.mark.anyio
    async def test_probe_failure_falls_back(self, settings):
        """Test an unreachable Dgraph falls back to the local store."""
        settings.dgraph_enabled = True
        native = native_mock(
            AsyncMock(side_effect=BackendUnavailableError("connect", "native", "refused"))
        )

        with patch("ckg.storage.factory.DgraphStore", return_value=native):
            store = await select_store(settings)

        assert isinstance(store, LocalGraphStore)
        native.close.assert_called_once()

    @pytest.mark.anyio
    async def test_probe_timeout_falls_back(self, settings):
        """Test a slow Dgraph is abandoned after the probe timeout."""
        settings.dgraph_enabled = True
        settings.backend_probe_timeout_seconds = 0.01

        async def hang():
            await asyncio.sleep(1)

        native = native_mock(hang)

        with patch("ckg.storage.factory.DgraphStore", return_value=native):
            store = await select_store(settings)

        assert isinstance(store, LocalGraphStore)
        native.close.assert_called_once()

    @pytest.mark.anyio
    async def test_local_path_must_be_directory(self, settings):
        """Test a file at the local store path is a configuration error."""
        settings.local_db_path.parent.mkdir(parents=True, exist_ok=True)
        settings.local_db_path.write_text("not a directory")

        with pytest.raises(ConfigurationError) as exc_info:
            await select_store(settings)

        assert exc_info.value.config_name == "local_db_path"

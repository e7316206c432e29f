# Root conftest: make sure pytest-asyncio is loaded before collection
import pytest_asyncio.plugin


def pytest_configure(config):
    if not config.pluginmanager.is_registered(pytest_asyncio.plugin):
        config.pluginmanager.register(pytest_asyncio.plugin, name="pytest_asyncio")

import pytest
from rich.console import Console

from laradeploy.errors import DeploymentError, SSLError
from laradeploy.models import Application
from laradeploy.services.ssl import SSLService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None


def _app():
    return Application(name="shop", root_path="/var/www/shop", domain="shop.example.com", runtime_version="8.2")


def test_obtain_runs_certbot_with_default_contact():
    calls = []

    def run_cmd(cmd, **kwargs):
        calls.append(cmd)

    SSLService(logger=DummyLogger(), console=Console(quiet=True), run_cmd=run_cmd).obtain(_app())

    assert calls[0][:4] == ["certbot", "--nginx", "-d", "shop.example.com"]
    assert calls[0][-1] == "admin@shop.example.com"


def test_certbot_failure_becomes_ssl_error():
    def run_cmd(cmd, **kwargs):
        raise DeploymentError("Command failed (1): certbot")

    service = SSLService(logger=DummyLogger(), console=Console(quiet=True), run_cmd=run_cmd)

    with pytest.raises(SSLError, match="shop.example.com"):
        service.obtain(_app(), email="ops@example.com")

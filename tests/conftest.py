import textwrap
from pathlib import Path

import pytest
import yaml

from stackctl.config import StackctlConfig
from stackctl.diagnostics import WarningCollector
from stackctl.elaborate import Elaborator
from stackctl.manifest import load_stack_manifest, write_manifest


STACK = {
    "version": 1,
    "kind": "stack",
    "meta": {"name": "demo"},
    "components": [
        {
            "name": "app",
            "source": {"dir": "components/app"},
            "requires": ["vpc"],
            "parameters": [
                {"name": "app.url", "value": "https://${dns.domain}/app", "env": "APP_URL"},
                {"name": "vpc.id", "env": "VPC_ID"},
            ],
            "outputs": [{"name": "app.endpoint"}],
        },
        {
            "name": "network",
            "source": {"dir": "components/network"},
            "provides": ["vpc"],
            "parameters": [{"name": "dns.domain", "env": "DOMAIN"}],
            "outputs": [{"name": "vpc.id", "brief": "VPC id"}],
        },
    ],
    "parameters": [
        {"name": "dns.domain", "value": "example.com"},
        {"name": "cloud.region", "default": "us-east-1"},
    ],
    "outputs": [{"name": "endpoint", "value": "${app.endpoint}"}],
}

NETWORK_DEPLOY = """\
    echo "deploying network in $DOMAIN"
    echo
    echo "Outputs:"
    echo "vpc.id = vpc-123"
    echo "component = $HUB_COMPONENT"
    echo "provides = dns"
    echo
"""

APP_DEPLOY = """\
    echo "Outputs:"
    echo "app.endpoint = $APP_URL"
    echo "seen.vpc = $VPC_ID"
"""

UNDEPLOY = """\
    echo "undeploying $HUB_COMPONENT"
"""


def write_script(directory: Path, name: str, body: str) -> Path:
    """Write a `<verb>.sh` script into a component directory."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text("#!/bin/sh\n" + textwrap.dedent(body))
    return path


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every test away from the user's stackctl config."""
    monkeypatch.setenv("STACKCTL_HOME", str(tmp_path / "stackctl-home"))
    monkeypatch.delenv("STACKCTL_LOG_LEVEL", raising=False)
    monkeypatch.delenv("STACKCTL_OS_ENVIRONMENT", raising=False)


@pytest.fixture
def config():
    return StackctlConfig(relay_output=False)


@pytest.fixture
def warnings():
    return WarningCollector()


@pytest.fixture
def stack_dir(tmp_path):
    """A two-component stack: network provides vpc, app requires it."""
    root = tmp_path / "stack"
    root.mkdir()
    (root / "hub.yaml").write_text(yaml.safe_dump(STACK, sort_keys=False))
    write_script(root / "components" / "network", "deploy.sh", NETWORK_DEPLOY)
    write_script(root / "components" / "network", "undeploy.sh", UNDEPLOY)
    write_script(root / "components" / "app", "deploy.sh", APP_DEPLOY)
    write_script(root / "components" / "app", "undeploy.sh", UNDEPLOY)
    return root


@pytest.fixture
def elaborate_path(stack_dir, config, warnings):
    """The stack elaborated with defaults, written next to hub.yaml."""
    stack = load_stack_manifest(stack_dir / "hub.yaml")
    manifest = Elaborator(config, warnings, environ={}).elaborate(stack)
    path = stack_dir / "hub.yaml.elaborate"
    write_manifest(manifest, [path])
    return path


@pytest.fixture
def state_path(stack_dir):
    return stack_dir / "hub.yaml.state"

"""Pytest configuration and fixtures for botcloud tests."""

import asyncio
import os
import tempfile

import pytest

# Set database path and field encryption key before importing botcloud modules
_temp_db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
_temp_db.close()
os.environ["BOTCLOUD_DB_PATH"] = _temp_db.name
os.environ["ENCRYPTION_KEY"] = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

TEST_SECRET = "test-provision-secret"


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Initialize test database once per session."""
    from botcloud.database import init_db

    init_db()
    yield

    try:
        os.unlink(_temp_db.name)
    except OSError:
        pass
    for suffix in ["-wal", "-shm"]:
        try:
            os.unlink(_temp_db.name + suffix)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def clear_all_stores():
    """Clear all stores and process caches before and after each test."""
    from botcloud.ca import clear_ca_cache
    from botcloud.hetzner import reset_cloud_client
    from botcloud.settings import clear_settings, invalidate_cache
    from botcloud.storage import bot_store, ca_store, nat_gateway_store

    def _clear():
        bot_store.clear()
        nat_gateway_store.clear()
        ca_store.clear()
        clear_settings()
        invalidate_cache()
        clear_ca_cache()
        reset_cloud_client()

    _clear()
    yield
    _clear()


@pytest.fixture(scope="session")
def ca_pair():
    """One RSA-4096 CA per session; key generation is slow."""
    from botcloud.certificates import generate_ca_certificate

    return generate_ca_certificate()


@pytest.fixture
def active_ca(ca_pair):
    """Store *ca_pair* as the active CA with a server cert for the backend."""
    from datetime import timedelta

    from botcloud.certificates import generate_server_certificate
    from botcloud.db_models import CertificateAuthorityRecord, utcnow
    from botcloud.encryption import encrypt
    from botcloud.storage import ca_store

    server = generate_server_certificate(
        "botcloud-backend.internal", "10.0.0.2", ca_pair.certificate, ca_pair.private_key
    )
    return ca_store.rotate(
        CertificateAuthorityRecord(
            ca_cert=ca_pair.certificate,
            ca_key_encrypted=encrypt(ca_pair.private_key),
            server_cert=server.certificate,
            server_key_encrypted=encrypt(server.private_key),
            expires_at=utcnow() + timedelta(days=3650),
        )
    )


@pytest.fixture
def provision_secret():
    from botcloud.settings import set_setting

    set_setting("provision.secret", TEST_SECRET)
    return TEST_SECRET


@pytest.fixture
def client():
    """FastAPI test client."""
    from fastapi.testclient import TestClient

    from botcloud.main import app

    return TestClient(app)


class FakeCloud:
    """In-memory stand-in for HetznerClient.

    Actions complete immediately. Set ``failures[method_name]`` to an
    exception to make that method raise it.
    """

    def __init__(self):
        self.servers = {}
        self.networks = {}
        self.firewalls = {}
        self.ssh_keys = {}
        self.created = []
        self.deleted = []
        self.attached = []
        self.firewall_applied = []
        self.routes_added = []
        self.power_ons = []
        self.power_offs = []
        self.reboots = []
        self.failures = {}
        self.initial_status = "running"
        self._next_id = 100
        self._next_host = 3

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def _maybe_fail(self, name: str):
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    def _action(self, command: str = ""):
        from botcloud.hetzner import CloudAction

        return CloudAction(id=self._id(), command=command, status="success", progress=100)

    def _not_found(self, what: str):
        from botcloud.hetzner import HetznerAPIError

        return HetznerAPIError(f"{what} not found", code="not_found", status_code=404)

    # servers

    async def create_server(self, **kwargs):
        from botcloud.hetzner import CloudServer, CreateServerResult, PublicNet

        self._maybe_fail("create_server")
        # Yield so concurrent provisioning runs interleave at the API call
        await asyncio.sleep(0)
        public_net = kwargs.get("public_net")
        has_ipv4 = not public_net or public_net.get("enable_ipv4", True)
        server_id = self._id()
        server = CloudServer(
            id=server_id,
            name=kwargs["name"],
            status=self.initial_status,
            public_net=PublicNet.model_validate(
                {"ipv4": {"ip": f"203.0.113.{server_id % 250}"}} if has_ipv4 else {}
            ),
            labels=kwargs.get("labels") or {},
        )
        self.servers[server_id] = server
        self.created.append(kwargs)
        return CreateServerResult(server=server, action=self._action("create_server"))

    async def get_server(self, server_id):
        self._maybe_fail("get_server")
        if server_id not in self.servers:
            raise self._not_found(f"Server {server_id}")
        return self.servers[server_id]

    async def delete_server(self, server_id):
        self._maybe_fail("delete_server")
        if server_id not in self.servers:
            raise self._not_found(f"Server {server_id}")
        del self.servers[server_id]
        self.deleted.append(server_id)
        return self._action("delete_server")

    async def power_on_server(self, server_id):
        self.power_ons.append(server_id)
        self.servers[server_id].status = "running"
        return self._action("start_server")

    async def power_off_server(self, server_id):
        self._maybe_fail("power_off_server")
        self.power_offs.append(server_id)
        self.servers[server_id].status = "off"
        return self._action("stop_server")

    async def reboot_server(self, server_id):
        self._maybe_fail("reboot_server")
        self.reboots.append(server_id)
        return self._action("reboot_server")

    async def wait_for_action(self, action_id, **kwargs):
        self._maybe_fail("wait_for_action")
        return self._action()

    async def wait_for_server_running(self, server_id, **kwargs):
        self._maybe_fail("wait_for_server_running")
        server = await self.get_server(server_id)
        server.status = "running"
        return server

    # ssh keys

    async def get_or_create_ssh_key(self, name, public_key):
        from botcloud.hetzner import SSHKey

        self._maybe_fail("get_or_create_ssh_key")
        for key in self.ssh_keys.values():
            if key.name == name:
                return key
        key = SSHKey(id=self._id(), name=name, public_key=public_key)
        self.ssh_keys[key.id] = key
        return key

    async def get_ssh_key_by_name(self, name):
        for key in self.ssh_keys.values():
            if key.name == name:
                return key
        return None

    async def list_ssh_keys(self):
        return list(self.ssh_keys.values())

    # networks and firewalls

    async def get_network_by_name(self, name):
        for network in self.networks.values():
            if network.name == name:
                return network
        return None

    async def create_network(self, *, name, ip_range, subnets=None, labels=None):
        from botcloud.hetzner import CloudNetwork

        self._maybe_fail("create_network")
        network = CloudNetwork(
            id=self._id(), name=name, ip_range=ip_range, subnets=subnets or [], labels=labels or {}
        )
        self.networks[network.id] = network
        return network

    async def get_firewall_by_name(self, name):
        for firewall in self.firewalls.values():
            if firewall.name == name:
                return firewall
        return None

    async def create_firewall(self, *, name, rules, labels=None):
        from botcloud.hetzner import CloudFirewall

        self._maybe_fail("create_firewall")
        firewall = CloudFirewall(id=self._id(), name=name, rules=rules, labels=labels or {})
        self.firewalls[firewall.id] = firewall
        return firewall

    async def attach_server_to_network(self, server_id, network_id, ip=None):
        from botcloud.hetzner import PrivateNet

        self._maybe_fail("attach_server_to_network")
        if ip is None:
            ip = f"10.0.0.{self._next_host}"
            self._next_host += 1
        self.servers[server_id].private_net.append(PrivateNet(network=network_id, ip=ip))
        self.networks[network_id].servers.append(server_id)
        self.attached.append((server_id, network_id, ip))
        return self._action("attach_to_network")

    async def apply_firewall_to_server(self, firewall_id, server_id):
        self._maybe_fail("apply_firewall_to_server")
        self.firewall_applied.append((firewall_id, server_id))
        return [self._action("apply_firewall")]

    async def add_network_route(self, network_id, destination, gateway):
        from botcloud.hetzner import NetworkRoute

        self.networks[network_id].routes.append(NetworkRoute(destination=destination, gateway=gateway))
        self.routes_added.append((network_id, destination, gateway))
        return self._action("add_route")


@pytest.fixture
def fake_cloud():
    return FakeCloud()


def make_bot(**overrides):
    from botcloud.db_models import BotInstance
    from botcloud.storage import bot_store

    values = {"user_id": "user-1", "name": "My Bot", "status": "starting"}
    values.update(overrides)
    return bot_store.create(BotInstance(**values))


@pytest.fixture
def bot_factory():
    return make_bot


@pytest.fixture
def mock_httpx(monkeypatch):
    """Route every httpx.AsyncClient created by botcloud through a handler.

    Returns an installer: ``mock_httpx(handler)`` where handler takes an
    ``httpx.Request`` and returns an ``httpx.Response`` (or raises).
    """
    import httpx

    real_client = httpx.AsyncClient
    seen = []

    def install(handler):
        def recording(request):
            seen.append(request)
            return handler(request)

        def factory(*args, **kwargs):
            kwargs.pop("verify", None)
            kwargs["transport"] = httpx.MockTransport(recording)
            return real_client(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", factory)
        return seen

    return install

"""Tests for cloud-init document generation."""

import json

import pytest
import yaml

from botcloud.certificates import generate_bot_certificate
from botcloud.cloud_init import (
    AGENT_SERVICE,
    CERT_DIR,
    CONFIG_API_URL,
    CloudInitOptions,
    escape_pem,
    generate_cloud_init,
    generate_cloud_init_with_certs,
    generate_nat_gateway_cloud_init,
)


@pytest.fixture(scope="module")
def bot_bundle(ca_pair):
    return generate_bot_certificate("bot-1234", ca_pair.certificate, ca_pair.private_key)


@pytest.fixture
def options(bot_bundle, ca_pair):
    return CloudInitOptions(
        bot_id="1234",
        bot_name='Robo "quoted" $bot',
        client_cert=bot_bundle.certificate,
        client_key=bot_bundle.private_key,
        ca_cert=ca_pair.certificate,
        gateway_token="gw-token",
    )


def _files(doc):
    return {f["path"]: f for f in doc["write_files"]}


def _pem_commands(doc):
    return [cmd for cmd in doc["runcmd"] if isinstance(cmd, list) and cmd[:2] == ["bash", "-c"]]


def test_escape_pem_single_line():
    escaped = escape_pem('line1\nquote " dollar $ tick ` back \\\nend\n')
    assert "\n" not in escaped
    assert escaped == 'line1\\nquote \\" dollar \\$ tick \\` back \\\\\\nend'


def test_document_is_valid_yaml(options):
    rendered = generate_cloud_init_with_certs(options)
    assert rendered.startswith("#cloud-config\n")
    doc = yaml.safe_load(rendered)
    assert "curl" in doc["packages"] and "jq" in doc["packages"]
    assert doc["final_message"] == 'Botcloud server provisioned for bot Robo "quoted" $bot'


def test_identity_file(options):
    doc = yaml.safe_load(generate_cloud_init_with_certs(options))
    config = json.loads(_files(doc)["/opt/botcloud/config.json"]["content"])
    assert config["bot_id"] == "1234"
    assert config["bot_name"] == 'Robo "quoted" $bot'
    assert config["config_api"] == CONFIG_API_URL


def test_no_secrets_besides_certificates(options):
    rendered = generate_cloud_init_with_certs(options)
    assert "gw-token" not in rendered


def test_pem_lines_have_no_raw_newlines(options):
    doc = yaml.safe_load(generate_cloud_init_with_certs(options))
    commands = _pem_commands(doc)
    assert len(commands) == 3
    for _, _, script in commands:
        assert "\n" not in script
        assert 'echo -e "' in script
        assert "-----BEGIN" in script


def test_pem_written_to_cert_dir_with_private_key_umask(options):
    doc = yaml.safe_load(generate_cloud_init_with_certs(options))
    scripts = [script for _, _, script in _pem_commands(doc)]
    targets = [s.rsplit("> ", 1)[1] for s in scripts]
    assert targets == [f"{CERT_DIR}/client.crt", f"{CERT_DIR}/client.key", f"{CERT_DIR}/ca.crt"]
    key_script = scripts[1]
    assert key_script.startswith("umask 077 && ")
    assert not scripts[0].startswith("umask")


def test_pem_decodes_back_to_original(options, bot_bundle):
    """Undo echo -e escapes to confirm the written file equals the PEM."""
    doc = yaml.safe_load(generate_cloud_init_with_certs(options))
    script = _pem_commands(doc)[0][2]
    quoted = script[script.index('"') + 1 : script.rindex('"')]
    decoded = quoted.replace("\\n", "\n").replace('\\"', '"')
    assert decoded == bot_bundle.certificate.strip()


def test_agent_service_installed(options):
    doc = yaml.safe_load(generate_cloud_init_with_certs(options))
    files = _files(doc)
    unit = files[f"/etc/systemd/system/{AGENT_SERVICE}.service"]["content"]
    assert "NoNewPrivileges=true" in unit
    assert "ExecStartPre=/opt/botcloud/bin/fetch-config.sh" in unit
    assert f"systemctl start {AGENT_SERVICE}" in doc["runcmd"]
    fetch = files["/opt/botcloud/bin/fetch-config.sh"]
    assert fetch["permissions"] == "0755"
    assert "--cert" in fetch["content"] and "/config" in fetch["content"]


def test_without_nat_no_route_changes(options):
    rendered = generate_cloud_init_with_certs(options)
    assert "ip route replace default" not in rendered
    assert "90-private.network" not in rendered


def test_nat_routing(options):
    from dataclasses import replace

    doc = yaml.safe_load(generate_cloud_init_with_certs(replace(options, nat_gateway_ip="10.0.1.254")))
    files = _files(doc)
    network = files["/etc/systemd/network/90-private.network"]["content"]
    assert "Gateway=10.0.1.254" in network
    assert "/etc/systemd/resolved.conf.d/botcloud.conf" in files
    route_cmds = [c for c in doc["runcmd"] if isinstance(c, str) and "ip route replace default" in c]
    assert route_cmds and "10.0.1.254" in route_cmds[0]
    # Routing is in place before the agent is installed
    runcmd = doc["runcmd"]
    npm = next(i for i, c in enumerate(runcmd) if isinstance(c, str) and c.startswith("npm install"))
    assert runcmd.index(route_cmds[0]) < npm


def test_without_certs_still_valid():
    doc = yaml.safe_load(generate_cloud_init("abcd", "Plain"))
    assert _pem_commands(doc) == []
    assert doc["final_message"].endswith("Plain")


def test_nat_gateway_document():
    doc = yaml.safe_load(generate_nat_gateway_cloud_init())
    files = {f["path"]: f for f in doc["write_files"]}
    assert "net.ipv4.ip_forward=1" in files["/etc/sysctl.d/99-ip-forward.conf"]["content"]
    assert "MASQUERADE" in files["/etc/networkd-dispatcher/routable.d/50-masquerade"]["content"]

"""#cloud-config rendering for bot VMs and NAT gateways.

Everything here is a pure function of its inputs so documents can be
diffed and asserted on in tests. Certificates are written from runcmd with
``echo -e`` and their newlines escaped, which keeps every runcmd entry on a
single YAML line.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from .network import BACKEND_PRIVATE_IP, CONFIG_API_PORT, NETWORK_IP_RANGE

BASE_DIR = "/opt/botcloud"
CERT_DIR = f"{BASE_DIR}/certs"
AGENT_CONFIG_DIR = "/root/.clawdbot"
AGENT_CONFIG_PATH = f"{AGENT_CONFIG_DIR}/clawdbot.json"
AGENT_PACKAGE = "clawdbot@latest"
AGENT_SERVICE = "botcloud-agent"
GATEWAY_PORT = 18789
PAIRING_PORT = 18790
DEFAULT_MODEL = "anthropic/claude-sonnet-4-20250514"
PRIVATE_INTERFACE = "ens10"
HETZNER_RESOLVERS = "185.12.64.1 185.12.64.2"

CONFIG_API_URL = f"https://{BACKEND_PRIVATE_IP}:{CONFIG_API_PORT}"


@dataclass(frozen=True)
class CloudInitOptions:
    bot_id: str
    bot_name: str
    private_ip: str = ""
    client_cert: str = ""
    client_key: str = ""
    ca_cert: str = ""
    gateway_token: str = ""
    nat_gateway_ip: str | None = None


def _indent_block(value: str, spaces: int) -> str:
    prefix = " " * spaces
    return "\n".join(f"{prefix}{line}" if line else "" for line in value.splitlines())


def escape_pem(pem: str) -> str:
    """Make *pem* safe inside ``echo -e "..."`` on one line.

    Backslashes go first so the escapes added afterwards survive.
    """
    escaped = (
        pem.strip()
        .replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
    )
    return escaped.replace("\r\n", "\n").replace("\n", "\\n")


def _yaml_single_quoted(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _write_pem_command(pem: str, path: str, *, private: bool = False) -> str:
    """runcmd entry (flow-sequence argv form) that writes *pem* to *path* via bash."""
    umask = "umask 077 && " if private else ""
    script = f'{umask}echo -e "{escape_pem(pem)}" > {path}'
    return f"  - [bash, -c, {_yaml_single_quoted(script)}]"


# Reads identity from config.json, fetches runtime config over mTLS, and writes
# the agent config plus an env file. Proxy credentials win over direct keys.
FETCH_CONFIG_SCRIPT = f"""#!/bin/bash
set -euo pipefail

CERT_DIR="{CERT_DIR}"
CONFIG_API=$(jq -r .config_api {BASE_DIR}/config.json)
BACKEND_IP=$(jq -r .backend_ip {BASE_DIR}/config.json)
AGENT_CONFIG="{AGENT_CONFIG_PATH}"
ENV_FILE="{BASE_DIR}/env"

echo "Fetching configuration from $CONFIG_API..."
if ! RESPONSE=$(curl -s --fail \\
    --cacert "$CERT_DIR/ca.crt" \\
    --cert "$CERT_DIR/client.crt" \\
    --key "$CERT_DIR/client.key" \\
    "$CONFIG_API/config"); then
  echo "Failed to fetch configuration" >&2
  exit 1
fi

MODEL=$(echo "$RESPONSE" | jq -r '.agent.model // "{DEFAULT_MODEL}"')
TELEGRAM_TOKEN=$(echo "$RESPONSE" | jq -r '.channels.telegram.botToken // empty')
GATEWAY_TOKEN=$(echo "$RESPONSE" | jq -r '.gatewayToken // empty')
PROXY_BASE_URL=$(echo "$RESPONSE" | jq -r '.proxy.baseUrl // empty')
PROXY_API_KEY=$(echo "$RESPONSE" | jq -r '.proxy.apiKey // empty')
ANTHROPIC_KEY=$(echo "$RESPONSE" | jq -r '.apiKeys.anthropic // empty')
OPENAI_KEY=$(echo "$RESPONSE" | jq -r '.apiKeys.openai // empty')

mkdir -p "$(dirname "$AGENT_CONFIG")"
jq -n \\
  --arg model "$MODEL" \\
  --arg telegram "$TELEGRAM_TOKEN" \\
  --arg proxy "$PROXY_BASE_URL" \\
  --arg backend "$BACKEND_IP" \\
  --argjson port {GATEWAY_PORT} \\
  '{{agents: {{defaults: {{model: {{primary: $model}}}}}},
    gateway: {{mode: "local", bind: "lan", port: $port, auth: {{mode: "token"}},
              controlUi: {{allowInsecureAuth: true}}, trustedProxies: [$backend]}}}}
   + (if $telegram != "" then {{channels: {{telegram: {{enabled: true, botToken: $telegram}}}}}} else {{}} end)
   + (if $proxy != "" then {{providers: {{anthropic: {{baseUrl: $proxy}}}}}} else {{}} end)' \\
  > "$AGENT_CONFIG"

umask 077
if [ -n "$PROXY_BASE_URL" ] && [ -n "$PROXY_API_KEY" ]; then
  echo "ANTHROPIC_API_KEY=$PROXY_API_KEY" > "$ENV_FILE"
else
  echo "ANTHROPIC_API_KEY=$ANTHROPIC_KEY" > "$ENV_FILE"
  if [ -n "$OPENAI_KEY" ]; then
    echo "OPENAI_API_KEY=$OPENAI_KEY" >> "$ENV_FILE"
  fi
fi
echo "CLAWDBOT_GATEWAY_TOKEN=$GATEWAY_TOKEN" >> "$ENV_FILE"

echo "Configuration written to $AGENT_CONFIG"
"""

AGENT_SERVICE_UNIT = f"""[Unit]
Description=Botcloud agent gateway
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
User=root
WorkingDirectory={BASE_DIR}
Environment=CLAWDBOT_CONFIG_PATH={AGENT_CONFIG_PATH}
EnvironmentFile=-{BASE_DIR}/env
ExecStartPre={BASE_DIR}/bin/fetch-config.sh
ExecStart=/usr/bin/clawdbot gateway --allow-unconfigured
Restart=always
RestartSec=10

NoNewPrivileges=true
ProtectSystem=strict
ProtectHome=read-only
ReadWritePaths={BASE_DIR} {AGENT_CONFIG_DIR} /root/clawd /var/log/botcloud /tmp
PrivateTmp=true

[Install]
WantedBy=multi-user.target
"""

HEALTH_SCRIPT = f"""#!/bin/bash
CONFIG={BASE_DIR}/config.json
echo "Bot ID: $(jq -r .bot_id $CONFIG)"
echo "Bot Name: $(jq -r .bot_name $CONFIG)"
echo "Private IP: $(jq -r .private_ip $CONFIG)"
echo "Agent service: $(systemctl is-active {AGENT_SERVICE})"
echo "Uptime: $(uptime -p)"
if curl -s --max-time 5 -o /dev/null -w '%{{http_code}}' http://127.0.0.1:{GATEWAY_PORT}/health | grep -q 200; then
  echo "Gateway: healthy"
else
  echo "Gateway: unreachable"
fi
"""


def _nat_routing_files(nat_gateway_ip: str) -> str:
    network_unit = f"""[Match]
Name={PRIVATE_INTERFACE}

[Network]
DHCP=yes

[Route]
Gateway={nat_gateway_ip}
Destination=0.0.0.0/0
Metric=100

[DHCP]
UseRoutes=false
UseDNS=false
"""
    resolver = f"""[Resolve]
DNS={HETZNER_RESOLVERS}
FallbackDNS=8.8.8.8 1.1.1.1
Domains=~.
"""
    return f"""  - path: /etc/systemd/network/90-private.network
    permissions: "0644"
    content: |
{_indent_block(network_unit, 6)}
  - path: /etc/systemd/resolved.conf.d/botcloud.conf
    permissions: "0644"
    content: |
{_indent_block(resolver, 6)}
"""


def _nat_routing_commands(nat_gateway_ip: str) -> str:
    wait_loop = f"""echo "Waiting for private network interface..."
for i in $(seq 1 60); do
  if ip link show {PRIVATE_INTERFACE} 2>/dev/null | grep -q UP; then
    echo "Private network up after ${{i}}s"
    break
  fi
  sleep 1
done"""
    return f"""  - |
{_indent_block(wait_loop, 4)}
  - systemctl restart systemd-networkd
  - systemctl restart systemd-resolved
  - ip route replace default via {nat_gateway_ip} dev {PRIVATE_INTERFACE} || echo "Route already set"
"""


def generate_cloud_init_with_certs(options: CloudInitOptions) -> str:
    """Render the bootstrap document for one bot VM."""
    config_json = json.dumps(
        {
            "bot_id": options.bot_id,
            "bot_name": options.bot_name,
            "private_ip": options.private_ip,
            "config_api": CONFIG_API_URL,
            "backend_ip": BACKEND_PRIVATE_IP,
        },
        indent=2,
    )

    cert_commands = []
    if options.client_cert:
        cert_commands.append(_write_pem_command(options.client_cert, f"{CERT_DIR}/client.crt"))
    if options.client_key:
        cert_commands.append(
            _write_pem_command(options.client_key, f"{CERT_DIR}/client.key", private=True)
        )
    if options.ca_cert:
        cert_commands.append(_write_pem_command(options.ca_cert, f"{CERT_DIR}/ca.crt"))
    cert_block = "\n".join(cert_commands) + "\n" if cert_commands else ""

    nat_ip = options.nat_gateway_ip
    nat_files = _nat_routing_files(nat_ip) if nat_ip else ""
    nat_commands = _nat_routing_commands(nat_ip) if nat_ip else ""
    final_message = json.dumps(f"Botcloud server provisioned for bot {options.bot_name}")

    return f"""#cloud-config
package_update: true
package_upgrade: true

packages:
  - curl
  - jq
  - ca-certificates

write_files:
  - path: {BASE_DIR}/config.json
    permissions: "0644"
    content: |
{_indent_block(config_json, 6)}
  - path: {BASE_DIR}/bin/fetch-config.sh
    permissions: "0755"
    content: |
{_indent_block(FETCH_CONFIG_SCRIPT, 6)}
  - path: /etc/systemd/system/{AGENT_SERVICE}.service
    permissions: "0644"
    content: |
{_indent_block(AGENT_SERVICE_UNIT, 6)}
  - path: {BASE_DIR}/bin/health.sh
    permissions: "0755"
    content: |
{_indent_block(HEALTH_SCRIPT, 6)}
{nat_files}
runcmd:
  - mkdir -p {CERT_DIR} {BASE_DIR}/bin /var/log/botcloud /root/clawd {AGENT_CONFIG_DIR}
  - chmod 700 {CERT_DIR}
{cert_block}{nat_commands}  - curl -fsSL https://deb.nodesource.com/setup_22.x | bash -
  - apt-get install -y nodejs
  - npm install -g {AGENT_PACKAGE}
  - {BASE_DIR}/bin/fetch-config.sh || echo "Config fetch failed, will retry on service start"
  - systemctl daemon-reload
  - systemctl enable {AGENT_SERVICE}
  - systemctl start {AGENT_SERVICE}

final_message: {final_message}
"""


def generate_cloud_init(bot_id: str, bot_name: str) -> str:
    """Bootstrap document without certificates (useful for debugging images)."""
    return generate_cloud_init_with_certs(CloudInitOptions(bot_id=bot_id, bot_name=bot_name))


NAT_MASQUERADE_SCRIPT = f"""#!/bin/bash
iptables -t nat -C POSTROUTING -s '{NETWORK_IP_RANGE}' -o eth0 -j MASQUERADE 2>/dev/null || \\
  iptables -t nat -A POSTROUTING -s '{NETWORK_IP_RANGE}' -o eth0 -j MASQUERADE
iptables -C FORWARD -i eth0 -o {PRIVATE_INTERFACE} -m state --state RELATED,ESTABLISHED -j ACCEPT 2>/dev/null || \\
  iptables -A FORWARD -i eth0 -o {PRIVATE_INTERFACE} -m state --state RELATED,ESTABLISHED -j ACCEPT
iptables -C FORWARD -i {PRIVATE_INTERFACE} -o eth0 -j ACCEPT 2>/dev/null || \\
  iptables -A FORWARD -i {PRIVATE_INTERFACE} -o eth0 -j ACCEPT
"""


def generate_nat_gateway_cloud_init() -> str:
    """Bootstrap document that turns a fresh VM into an egress NAT for the private range."""
    sysctl = "net.ipv4.ip_forward=1\nnet.netfilter.nf_conntrack_max=131072\n"
    resolver = f"[Resolve]\nDNS={HETZNER_RESOLVERS}\nFallbackDNS=8.8.8.8 1.1.1.1\nDomains=~.\n"
    return f"""#cloud-config
package_update: true
packages:
  - iptables-persistent

write_files:
  - path: /etc/sysctl.d/99-ip-forward.conf
    content: |
{_indent_block(sysctl, 6)}
  - path: /etc/networkd-dispatcher/routable.d/50-masquerade
    permissions: "0755"
    content: |
{_indent_block(NAT_MASQUERADE_SCRIPT, 6)}
  - path: /etc/systemd/resolved.conf.d/dns.conf
    content: |
{_indent_block(resolver, 6)}

runcmd:
  - sysctl -p /etc/sysctl.d/99-ip-forward.conf
  - /etc/networkd-dispatcher/routable.d/50-masquerade
  - netfilter-persistent save
  - systemctl restart systemd-resolved
  - echo "NAT gateway setup complete"
"""

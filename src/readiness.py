"""Pre-flight readiness checks for the target cluster.

Validates prerequisites before scheduling apps:
- API server reachability and credentials
- Node address resolution and SSH reachability (for node-level commands)
"""

import socket
from typing import Optional

import requests
import urllib3

# API servers commonly present self-signed certs
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def validate_api_endpoint(api_endpoint: str, token: Optional[str] = None,
                          verify: bool = False, timeout: float = 10) -> tuple[bool, str]:
    """Check the Kubernetes API server answers /version.

    Args:
        api_endpoint: Control plane URL (e.g., https://10.0.0.1:6443)
        token: Bearer token; anonymous when None
        verify: Verify the server certificate
        timeout: Request timeout in seconds

    Returns:
        (success, message) tuple
    """
    headers = {'Authorization': f'Bearer {token}'} if token else {}
    try:
        resp = requests.get(
            f"{api_endpoint.rstrip('/')}/version",
            headers=headers,
            verify=verify,
            timeout=timeout,
        )
    except requests.exceptions.ConnectionError as e:
        return False, f"API server {api_endpoint} unreachable: {e}"
    except requests.exceptions.Timeout:
        return False, f"API server {api_endpoint} did not answer within {timeout}s"
    except requests.exceptions.RequestException as e:
        return False, f"GET {api_endpoint}/version failed: {e}"

    if resp.status_code in (401, 403):
        return False, f"API server rejected credentials ({resp.status_code}). Check the token or kubeconfig."

    if resp.status_code == 200:
        version = resp.json().get('gitVersion', 'unknown')
        return True, f"Kubernetes API accessible (version {version})"

    return False, f"GET /version returned {resp.status_code}: {resp.text[:100]}"


def resolve_node_address(address: str) -> tuple[bool, str]:
    """Resolve a node address (IPs resolve to themselves).

    Returns:
        (success, resolved IP or error message) tuple
    """
    try:
        return True, socket.gethostbyname(address)
    except socket.gaierror as e:
        return False, f"{address} does not resolve: {e.strerror or e}"


def probe_ssh_port(ip: str, port: int = 22, timeout: float = 5.0) -> tuple[bool, str]:
    """Open and close a TCP connection to the node's SSH port.

    Returns:
        (success, message) tuple
    """
    try:
        with socket.create_connection((ip, port), timeout=timeout):
            pass
    except socket.timeout:
        return False, f"{ip}:{port} did not answer within {timeout}s"
    except OSError as e:
        return False, f"{ip}:{port} refused or unreachable: {e}"
    return True, f"{ip}:{port} accepting connections"


def validate_nodes(nodes: list, port: int = 22, timeout: float = 5.0) -> list[tuple[str, bool, str]]:
    """Check every node can be reached for node-level commands.

    Args:
        nodes: Node objects from the node registry

    Returns:
        (node name, success, message) per node
    """
    results = []
    for node in nodes:
        ok, ip = resolve_node_address(node.address)
        if not ok:
            results.append((node.name, False, ip))
            continue
        ok, message = probe_ssh_port(ip, port=port, timeout=timeout)
        results.append((node.name, ok, message))
    return results

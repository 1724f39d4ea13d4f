"""Health probes run against a container address."""

import logging
import socket

import requests

logger = logging.getLogger(__name__)


def check_http(address: str, port: int, path: str, timeout: float, label: str = "") -> bool:
    """
    Perform HTTP health check.

    Args:
        address: Container IP on a shared network
        port: Container port
        path: Request path
        timeout: Request timeout in seconds
        label: Prefix for log lines

    Returns:
        True for a 2xx/3xx response, False otherwise
    """
    if not path.startswith("/"):
        path = "/" + path
    url = f"http://{address}:{port}{path}"

    try:
        response = requests.get(url, timeout=timeout, allow_redirects=False)
    except requests.exceptions.RequestException as e:
        logger.warning(f"[{label}] ❌ HTTP check error: {url}: {e}")
        return False

    is_healthy = 200 <= response.status_code < 400
    if is_healthy:
        logger.info(f"[{label}] ✅ HTTP check OK: {url} ({response.status_code})")
    else:
        logger.warning(f"[{label}] ❌ HTTP check FAIL: {url} returned {response.status_code}")
    return is_healthy


def check_tcp(address: str, port: int, timeout: float, label: str = "") -> bool:
    """
    Perform TCP health check.

    Returns:
        True if a connection to address:port could be opened
    """
    try:
        with socket.create_connection((address, port), timeout=timeout):
            logger.info(f"[{label}] ✅ TCP check OK: {address}:{port}")
            return True
    except OSError as e:
        logger.warning(f"[{label}] ❌ TCP check FAIL: {address}:{port}: {e}")
        return False

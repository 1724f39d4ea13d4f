# rollout_engine/router/traefik.py
"""
Traefik router adapter (file provider).

Each service owns one dynamic configuration file, ``<service>.yml``, in
the directory Traefik watches. Changes are written to a hidden temp file
and moved into place with ``os.replace`` so Traefik only ever reads a
complete file.
"""

import logging
import os
import re
import tempfile
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlsplit

import requests
import yaml

from rollout_engine.core.errors import NotFound, RouterUnreachable, RuleConflict
from rollout_engine.core.models import InstanceHandle, RouteRegistration, RouteRule
from rollout_engine.router.base import Router

logger = logging.getLogger(__name__)

HOST_RULE = re.compile(r"Host\(`([^`]+)`\)")
ROUTE_SUFFIXES = (".yml", ".yaml")


def render_route(reg: RouteRegistration) -> Dict[str, Any]:
    """Traefik dynamic configuration for one service."""
    router: Dict[str, Any] = {
        "rule": f"Host(`{reg.hostname}`)",
        "entryPoints": [reg.entrypoint],
        "service": reg.service_name,
    }
    if reg.tls_resolver:
        router["tls"] = {"certResolver": reg.tls_resolver}

    return {
        "http": {
            "routers": {reg.service_name: router},
            "services": {
                reg.service_name: {
                    "loadBalancer": {
                        "servers": [{"url": f"http://{reg.target_name}:{reg.target_port}"}],
                    },
                },
            },
        },
    }


def parse_route(service_name: str, document: Dict[str, Any]) -> Optional[RouteRegistration]:
    """Inverse of ``render_route``; None when the document holds no usable route."""
    http = (document or {}).get("http") or {}
    router = (http.get("routers") or {}).get(service_name)
    service = (http.get("services") or {}).get(service_name)
    if not router or not service:
        return None

    match = HOST_RULE.search(router.get("rule", ""))
    servers = (service.get("loadBalancer") or {}).get("servers") or []
    if not match or not servers:
        return None

    url = urlsplit(servers[0].get("url", ""))
    entrypoints = router.get("entryPoints") or ["websecure"]
    return RouteRegistration(
        service_name=service_name,
        hostname=match.group(1),
        target_name=url.hostname or "",
        target_port=url.port or 80,
        entrypoint=entrypoints[0],
        tls_resolver=(router.get("tls") or {}).get("certResolver"),
    )


class TraefikFileRouter(Router):
    """Router adapter writing Traefik file-provider configuration."""

    def __init__(
        self,
        dynamic_dir: Union[str, Path],
        api_url: Optional[str] = None,
        timeout: float = 10.0,
        poll_interval: float = 0.5,
    ):
        """
        Args:
            dynamic_dir: Directory watched by Traefik's file provider
            api_url: Traefik API base URL (e.g. "http://127.0.0.1:8080"); when set,
                every change is confirmed against the running proxy
            timeout: Seconds to wait for Traefik to pick up a change
            poll_interval: Seconds between confirmation polls
        """
        self.dynamic_dir = Path(dynamic_dir)
        self.api_url = api_url.rstrip("/") if api_url else None
        self.timeout = timeout
        self.poll_interval = poll_interval

    # -------------------------
    # ROUTER CONTRACT
    # -------------------------

    def register_route(
        self,
        service_name: str,
        rule: RouteRule,
        target_port: int,
        target: InstanceHandle,
    ) -> RouteRegistration:
        self._require_dir()
        self._check_conflict(service_name, rule.hostname)

        reg = RouteRegistration(
            service_name=service_name,
            hostname=rule.hostname,
            target_name=target.name,
            target_port=target_port,
            entrypoint=rule.entrypoint,
            tls_resolver=rule.tls_resolver,
        )
        self._write(reg)
        self._confirm(reg)
        logger.info(f"[traefik] registered {rule.hostname} -> {target.name}:{target_port}")
        return reg

    def swap_target(self, service_name: str, new_target: InstanceHandle) -> RouteRegistration:
        self._require_dir()
        current = self.get_route(service_name)
        if current is None:
            raise NotFound(f"No route registered for {service_name}")

        reg = replace(current, target_name=new_target.name)
        self._write(reg)
        self._confirm(reg)
        logger.info(
            f"[traefik] swapped {current.hostname}: {current.target_name} -> {new_target.name}"
        )
        return reg

    def deregister_route(self, service_name: str) -> None:
        self._require_dir()
        path = self._path(service_name)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise RouterUnreachable(f"Cannot remove {path}: {e}") from e

        self._confirm_absent(service_name)
        logger.info(f"[traefik] deregistered {service_name}")

    def get_route(self, service_name: str) -> Optional[RouteRegistration]:
        document = self._read(self._path(service_name))
        if document is None:
            return None
        return parse_route(service_name, document)

    def list_routes(self) -> List[RouteRegistration]:
        routes = []
        for path in self._route_files():
            reg = self.get_route(path.stem)
            if reg is not None:
                routes.append(reg)
        return routes

    # -------------------------
    # FILES
    # -------------------------

    def _path(self, service_name: str) -> Path:
        return self.dynamic_dir / f"{service_name}.yml"

    def _require_dir(self) -> None:
        if not self.dynamic_dir.is_dir():
            raise RouterUnreachable(f"Traefik dynamic directory not found: {self.dynamic_dir}")

    def _route_files(self) -> List[Path]:
        if not self.dynamic_dir.is_dir():
            return []
        return sorted(
            p for p in self.dynamic_dir.iterdir()
            if p.suffix in ROUTE_SUFFIXES and not p.name.startswith(".")
        )

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except FileNotFoundError:
            return None
        except yaml.YAMLError as e:
            logger.warning(f"[traefik] ignoring unparsable {path}: {e}")
            return None
        except OSError as e:
            raise RouterUnreachable(f"Cannot read {path}: {e}") from e

    def _write(self, reg: RouteRegistration) -> None:
        path = self._path(reg.service_name)
        content = yaml.safe_dump(render_route(reg), sort_keys=False)
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.dynamic_dir, prefix=".", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise RouterUnreachable(f"Cannot write {path}: {e}") from e

    def _check_conflict(self, service_name: str, hostname: str) -> None:
        for path in self._route_files():
            if path.stem == service_name:
                continue
            document = self._read(path)
            if not document:
                continue
            routers = ((document.get("http") or {}).get("routers") or {})
            for router_name, router in routers.items():
                if hostname in HOST_RULE.findall((router or {}).get("rule", "")):
                    raise RuleConflict(
                        f"Hostname {hostname} already routed by '{router_name}' ({path.name})"
                    )

    # -------------------------
    # TRAEFIK API CONFIRMATION
    # -------------------------

    def _confirm(self, reg: RouteRegistration) -> None:
        """Wait until Traefik serves ``reg``'s backend (no-op without an API URL)."""
        if not self.api_url:
            return

        expected = f"http://{reg.target_name}:{reg.target_port}"
        url = f"{self.api_url}/api/http/services/{reg.service_name}@file"
        deadline = time.monotonic() + self.timeout
        last_error = "not loaded yet"

        while True:
            try:
                response = requests.get(url, timeout=self.poll_timeout)
                if response.status_code == 200:
                    servers = (response.json().get("loadBalancer") or {}).get("servers") or []
                    if [s.get("url") for s in servers] == [expected]:
                        return
                    last_error = f"serving {[s.get('url') for s in servers]}"
                else:
                    last_error = f"HTTP {response.status_code}"
            except requests.exceptions.RequestException as e:
                last_error = str(e)

            if time.monotonic() >= deadline:
                raise RouterUnreachable(
                    f"Traefik did not apply route for {reg.service_name} "
                    f"within {self.timeout}s: {last_error}"
                )
            time.sleep(self.poll_interval)

    def _confirm_absent(self, service_name: str) -> None:
        if not self.api_url:
            return

        url = f"{self.api_url}/api/http/routers/{service_name}@file"
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                response = requests.get(url, timeout=self.poll_timeout)
                if response.status_code == 404:
                    return
            except requests.exceptions.RequestException as e:
                logger.warning(f"[traefik] API check failed: {e}")

            if time.monotonic() >= deadline:
                raise RouterUnreachable(
                    f"Traefik still routes {service_name} after {self.timeout}s"
                )
            time.sleep(self.poll_interval)

    @property
    def poll_timeout(self) -> float:
        return max(0.1, min(self.timeout, 5.0))

# rollout_engine/infrastructure/memory/router.py
"""In-memory router (dry runs and tests)."""

from dataclasses import replace
from threading import Lock
from typing import Dict, List, Optional

from rollout_engine.core.errors import NotFound, RouterUnreachable, RuleConflict
from rollout_engine.core.models import InstanceHandle, RouteRegistration, RouteRule
from rollout_engine.router.base import Router


class InMemoryRouter(Router):
    def __init__(self):
        self.routes: Dict[str, RouteRegistration] = {}
        self.history: List[tuple] = []
        self.fail_on: Dict[str, str] = {}
        self.swap_calls = 0
        self._lock = Lock()

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise RouterUnreachable(self.fail_on[operation])

    def register_route(
        self,
        service_name: str,
        rule: RouteRule,
        target_port: int,
        target: InstanceHandle,
    ) -> RouteRegistration:
        self._maybe_fail("register_route")
        with self._lock:
            for name, reg in self.routes.items():
                if name != service_name and reg.hostname == rule.hostname:
                    raise RuleConflict(f"Hostname {rule.hostname} already routed by '{name}'")

            reg = RouteRegistration(
                service_name=service_name,
                hostname=rule.hostname,
                target_name=target.name,
                target_port=target_port,
                entrypoint=rule.entrypoint,
                tls_resolver=rule.tls_resolver,
            )
            self.routes[service_name] = reg
            self.history.append(("register", service_name, target.name))
            return reg

    def deregister_route(self, service_name: str) -> None:
        self._maybe_fail("deregister_route")
        with self._lock:
            if self.routes.pop(service_name, None) is not None:
                self.history.append(("deregister", service_name, None))

    def swap_target(self, service_name: str, new_target: InstanceHandle) -> RouteRegistration:
        with self._lock:
            self.swap_calls += 1
        self._maybe_fail("swap_target")
        with self._lock:
            current = self.routes.get(service_name)
            if current is None:
                raise NotFound(f"No route registered for {service_name}")
            reg = replace(current, target_name=new_target.name)
            self.routes[service_name] = reg
            self.history.append(("swap", service_name, new_target.name))
            return reg

    def get_route(self, service_name: str) -> Optional[RouteRegistration]:
        with self._lock:
            return self.routes.get(service_name)

    def list_routes(self) -> List[RouteRegistration]:
        with self._lock:
            return [self.routes[name] for name in sorted(self.routes)]

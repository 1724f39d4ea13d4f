#rollout_engine\router\base.py

from abc import ABC, abstractmethod
from typing import List, Optional

from rollout_engine.core.models import InstanceHandle, RouteRegistration, RouteRule


class Router(ABC):
    """
    Thin contract over the reverse proxy.

    Hostnames are 1:1 with service names. ``swap_target`` replaces the
    backend in one step: clients never see a gap with no backend, and never
    see the old and new backends at the same time.
    """

    @abstractmethod
    def register_route(
        self,
        service_name: str,
        rule: RouteRule,
        target_port: int,
        target: InstanceHandle,
    ) -> RouteRegistration:
        """
        Raises:
            RuleConflict: hostname claimed by a different service
            RouterUnreachable: proxy configuration cannot be applied
        """
        raise NotImplementedError

    @abstractmethod
    def deregister_route(self, service_name: str) -> None:
        """
        Remove the route. Removing a missing route succeeds.
        """
        raise NotImplementedError

    @abstractmethod
    def swap_target(self, service_name: str, new_target: InstanceHandle) -> RouteRegistration:
        """
        Point an existing route at ``new_target``.

        Raises:
            NotFound: service has no route
            RouterUnreachable: proxy configuration cannot be applied
        """
        raise NotImplementedError

    @abstractmethod
    def get_route(self, service_name: str) -> Optional[RouteRegistration]:
        raise NotImplementedError

    @abstractmethod
    def list_routes(self) -> List[RouteRegistration]:
        raise NotImplementedError

"""Read-only query selectors."""

from hierarchy_kernel.selectors.base import BaseSelector
from hierarchy_kernel.selectors.request_selector import RequestSelector
from hierarchy_kernel.selectors.visit_selector import VisitSelector

__all__ = ["BaseSelector", "RequestSelector", "VisitSelector"]

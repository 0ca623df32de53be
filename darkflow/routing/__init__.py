"""Route resolution: aggregator quotes on mainnet, simulated rates elsewhere."""

from darkflow.routing.jupiter import JupiterClient
from darkflow.routing.resolver import Quote, RouteResolver

__all__ = ["JupiterClient", "Quote", "RouteResolver"]

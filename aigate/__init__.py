from aigate.gateway import AIGateway
from aigate.models import Compat, GatewayResult

__all__ = ["AIGateway", "Compat", "GatewayResult"]

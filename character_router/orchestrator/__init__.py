from .channels import build_channel_id, parse_channel_id
from .dedupe import ProcessedMessageIds
from .router import MessageOrchestrator
from .transport import Transport

__all__ = [
    "MessageOrchestrator",
    "ProcessedMessageIds",
    "Transport",
    "build_channel_id",
    "parse_channel_id",
]

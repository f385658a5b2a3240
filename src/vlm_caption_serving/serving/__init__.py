"""
Request admission, batch streaming and the HTTP/WebSocket transport.
"""

from vlm_caption_serving.serving.gate import AdmissionGate, ChannelClosed, OutboundChannel
from vlm_caption_serving.serving.service import CaptionRequest, CaptionResult, CaptionService

__all__ = [
    "AdmissionGate",
    "ChannelClosed",
    "OutboundChannel",
    "CaptionRequest",
    "CaptionResult",
    "CaptionService",
]

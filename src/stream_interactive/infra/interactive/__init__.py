"""インタラクティブ (双方向リアルタイム) プロトコルクライアント。"""

from .cache import ResourceStateCache
from .client import InteractiveClient, InteractiveSession, build_interactive_client
from .connection import (
    ConnectionManager,
    ConnectionState,
    InteractiveTransportProtocol,
    TransportFactory,
    open_websocket_transport,
)
from .correlator import PendingRequest, RequestCorrelator
from .dispatcher import ALL_METHODS, EventDispatcher
from .errors import (
    InteractiveClientError,
    InteractiveDisconnectedError,
    InteractiveProtocolError,
    InteractiveRateLimitError,
    InteractiveReplyError,
    InteractiveStateError,
    InteractiveTimeoutError,
    InteractiveTransportError,
    InteractiveValidationError,
)
from .models import (
    ButtonControl,
    Control,
    ControlPosition,
    GenericControl,
    Group,
    JoystickControl,
    MemoryStats,
    Participant,
    Scene,
    decode_control,
)
from .packets import (
    MethodPacket,
    PacketIdAllocator,
    PacketType,
    ReplyError,
    ReplyPacket,
    decode_frame,
    encode_method,
)
from .throttle import ThrottleManager, ThrottleSetting, ThrottleState

__all__ = [
    "ALL_METHODS",
    "ButtonControl",
    "ConnectionManager",
    "ConnectionState",
    "Control",
    "ControlPosition",
    "EventDispatcher",
    "GenericControl",
    "Group",
    "InteractiveClient",
    "InteractiveClientError",
    "InteractiveDisconnectedError",
    "InteractiveProtocolError",
    "InteractiveRateLimitError",
    "InteractiveReplyError",
    "InteractiveSession",
    "InteractiveStateError",
    "InteractiveTimeoutError",
    "InteractiveTransportError",
    "InteractiveTransportProtocol",
    "InteractiveValidationError",
    "JoystickControl",
    "MemoryStats",
    "MethodPacket",
    "PacketIdAllocator",
    "PacketType",
    "Participant",
    "PendingRequest",
    "ReplyError",
    "ReplyPacket",
    "RequestCorrelator",
    "ResourceStateCache",
    "Scene",
    "ThrottleManager",
    "ThrottleSetting",
    "ThrottleState",
    "TransportFactory",
    "build_interactive_client",
    "decode_control",
    "decode_frame",
    "encode_method",
    "open_websocket_transport",
]

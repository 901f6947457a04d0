"""
Bridge services connecting WeChat (via Wechaty) to Matrix.
"""

from src.bridges.wechaty_matrix_bridge import (
    WechatyMatrixBridge,
    build_bridge,
)

__all__ = [
    "WechatyMatrixBridge",
    "build_bridge",
]

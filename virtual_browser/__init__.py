"""
Virtual Browser - remote rendering sessions streamed over WebSocket.
"""
__version__ = "0.1.0"

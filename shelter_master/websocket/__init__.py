from shelter_master.websocket.manager import WebSocketManager

__all__ = ['WebSocketManager']

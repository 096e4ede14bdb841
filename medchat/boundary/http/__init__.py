"""HTTP implementation of the backend collaborators."""

from medchat.boundary.http.medchat_client import MedChatApiClient
from medchat.boundary.http.stream_decoder import StreamDecoder

__all__ = ["MedChatApiClient", "StreamDecoder"]

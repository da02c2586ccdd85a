from .api_client import ApiError, TimelinciClient
from .board import BoardCache
from .events import EventStreamListener, iter_sse

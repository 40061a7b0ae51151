from .kindroid_client import KindroidClient
from .reddit_client import RedditClient

__all__ = ["KindroidClient", "RedditClient"]

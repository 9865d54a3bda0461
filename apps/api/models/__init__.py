"""Models package."""

from .draft import Draft
from .account import Account
from .scheduled_post import ScheduledPost
from .ai_job import AiJob
from .ai_asset import AiAsset
from .indexed_post import IndexedPost
from .feed import Feed
from .feed_rule import FeedRule
from .feed_source import FeedSource
from .feed_join_request import FeedJoinRequest
from .worker_heartbeat import WorkerHeartbeat
from .job_event import JobEvent

"""Models package."""

from .user import User
from .subscription import Subscription
from .token_transaction import TokenTransaction
from .social_engagement import SocialEngagement

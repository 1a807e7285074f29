"""Models package."""

from .user import User
from .user_profile import UserProfile
from .adventure import Adventure
from .purchase import Purchase

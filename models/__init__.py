from .db import db
from .user import User, Role, user_roles
from .audit_log import AuditLog
from .session import Session
from .resource import Resource, AvailabilityRule
from .pet import Pet
from .hold import Hold
from .booking import Booking
from .review import Review
from .notification import Notification
from .api_key import WidgetApiKey

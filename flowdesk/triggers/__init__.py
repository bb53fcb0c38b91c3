from flowdesk.triggers.auth_methods import WebhookAuthMethodStore
from flowdesk.triggers.cron import CronScheduler
from flowdesk.triggers.webhook import WebhookHandler

__all__ = ["CronScheduler", "WebhookAuthMethodStore", "WebhookHandler"]

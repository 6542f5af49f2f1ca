from .queue import Notification, NotificationAction, NotificationQueue, NotificationSource, NotificationType

__all__ = ['Notification', 'NotificationAction', 'NotificationQueue', 'NotificationSource', 'NotificationType']

from flask import Blueprint, request
from flask_login import login_required, current_user

import services
from api import ok

notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')


@notifications_bp.route('', methods=['GET'])
@login_required
def get_notifications():
    """Get user's notifications"""
    include_read = request.args.get('include_read', 'false').lower() == 'true'
    notifications = services.list_notifications(current_user, include_read=include_read)
    unread = sum(1 for n in notifications if not n.is_read)
    return ok([n.to_dict() for n in notifications], count=len(notifications), unread_count=unread)


@notifications_bp.route('/<int:notification_id>/read', methods=['POST'])
@login_required
def mark_notification_read(notification_id):
    """Mark a single notification as read"""
    notification = services.mark_notification_read(current_user, notification_id)
    return ok(notification.to_dict())


@notifications_bp.route('/read-all', methods=['POST'])
@login_required
def mark_all_notifications_read():
    """Mark all notifications as read"""
    updated = services.mark_all_notifications_read(current_user)
    return ok({'updated': updated})

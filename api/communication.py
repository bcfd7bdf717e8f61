"""
Messaging API Endpoints
Free-text messages between two users, optionally tied to an appointment
"""

from flask import Blueprint, request
from flask_login import login_required, current_user

import services
from api import ok, json_body
from schemas import MessageCreateSchema, MessageQuerySchema, load_or_raise

communication_bp = Blueprint('communication', __name__, url_prefix='/api/messages')


@communication_bp.route('', methods=['GET'])
@login_required
def get_conversation():
    """Messages between the current user and ?other_user_id=, oldest first"""
    query = load_or_raise(MessageQuerySchema(), request.args.to_dict())
    messages = services.list_messages(current_user, query['other_user_id'])
    return ok([m.to_dict() for m in messages], count=len(messages))


@communication_bp.route('', methods=['POST'])
@login_required
def send_message():
    data = load_or_raise(MessageCreateSchema(), json_body())
    message = services.send_message(current_user, data)
    return ok(message.to_dict(), 201)


@communication_bp.route('/<int:message_id>/read', methods=['POST'])
@login_required
def mark_message_read(message_id):
    """Mark a received message as read"""
    message = services.mark_message_read(current_user, message_id)
    return ok(message.to_dict())

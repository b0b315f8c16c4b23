"""
WebSocket 專案房間

前端進入專案頁面時 emit 'join-project',離開時 emit 'leave-project';
後端有 task 變動就廣播到 project-<id> 房間
"""
from flask import request
from flask_socketio import join_room, leave_room, emit
from extensions import socketio
import logging

logger = logging.getLogger(__name__)


def project_room(project_id):
    return f'project-{project_id}'


@socketio.on('connect')
def handle_connect():
    logger.info(f"Socket connected: {request.sid}")


@socketio.on('disconnect')
def handle_disconnect(*args):
    logger.info(f"Socket disconnected: {request.sid}")


@socketio.on('join-project')
def handle_join_project(project_id):
    room = project_room(project_id)
    join_room(room)
    logger.info(f"Socket {request.sid} joined {room}")
    emit('joined-project', {'projectId': project_id, 'room': room})


@socketio.on('leave-project')
def handle_leave_project(project_id):
    room = project_room(project_id)
    leave_room(room)
    logger.info(f"Socket {request.sid} left {room}")
    emit('left-project', {'projectId': project_id, 'room': room})


def emit_project_event(project_id, event, payload):
    """從 HTTP handler 廣播到專案房間"""
    socketio.emit(event, payload, to=project_room(project_id))

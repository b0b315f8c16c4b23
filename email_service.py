from flask import current_app
from flask_mail import Message
from extensions import mail
import logging

logger = logging.getLogger(__name__)


def invitation_link(invitation):
    return f"{current_app.config['FRONTEND_URL']}/invite?token={invitation.token}"


def send_invitation_email(invitation):
    """寄出邀請信 (純文字)"""
    inviter = invitation.inviter.full_name if invitation.inviter else 'A teammate'
    project_line = f' to join the project "{invitation.project.name}"' if invitation.project else ''

    body = (
        f"Hello,\n\n"
        f"{inviter} has invited you{project_line} as {invitation.role.replace('_', ' ')}.\n\n"
    )
    if invitation.message:
        body += f"Message from {inviter}:\n{invitation.message}\n\n"
    body += (
        f"Accept the invitation here:\n{invitation_link(invitation)}\n\n"
        f"This invitation expires on {invitation.expires_at.strftime('%Y-%m-%d %H:%M UTC')}.\n"
    )

    msg = Message(
        subject="You're invited to join Project Tracker",
        recipients=[invitation.email],
        body=body
    )
    mail.send(msg)
    logger.info(f"Invitation email sent to {invitation.email}")

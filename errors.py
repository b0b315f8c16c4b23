"""
業務錯誤類別

Service 函數直接 raise,由 app.py 的 errorhandler 統一轉成 JSON envelope
"""


class AppError(Exception):
    status_code = 400
    error = 'bad_request'

    def __init__(self, message, status_code=None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self):
        payload = {
            'success': False,
            'message': self.message,
            'error': self.error
        }
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationFailed(AppError):
    error = 'validation_failed'

    def __init__(self, details, message='Validation failed'):
        super().__init__(message, details=details)


class AccessDenied(AppError):
    error = 'access_denied'

    def __init__(self, message='Access denied to this project'):
        super().__init__(message)


class InsufficientPermissions(AppError):
    error = 'insufficient_permissions'

    def __init__(self, message='Insufficient permissions'):
        super().__init__(message)


class InvalidStateTransition(AppError):
    error = 'invalid_state_transition'


class LastProjectManagerError(AppError):
    error = 'last_project_manager'

    def __init__(self, message='Cannot remove the last project manager'):
        super().__init__(message)


class BusinessRuleViolation(AppError):
    error = 'business_rule_violation'


class NotFound(AppError):
    status_code = 404
    error = 'not_found'

    def __init__(self, resource='Resource'):
        super().__init__(f'{resource} not found')


class AdminRequired(AppError):
    status_code = 403
    error = 'admin_required'

    def __init__(self, message='Access denied. Admin privileges required.'):
        super().__init__(message)


class Conflict(AppError):
    status_code = 409
    error = 'conflict'

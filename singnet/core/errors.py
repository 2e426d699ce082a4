"""
Error taxonomy shared by every component
"""


class VPNManagerError(Exception):
    """Base class for errors reported to API callers"""

    kind = 'error'
    status_code = 500

    def __init__(self, message: str = ''):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': self.message}


class ValidationError(VPNManagerError):
    """Missing or malformed caller input"""
    kind = 'validation'
    status_code = 400


class NotFoundError(ValidationError):
    """Referenced subscription/config does not exist"""
    kind = 'not_found'
    status_code = 404


class UnresolvableError(VPNManagerError):
    """No concrete server can be derived for a config"""
    kind = 'unresolvable'
    status_code = 422


class NetworkError(VPNManagerError):
    """Remote fetch failed (subscription source, engine download)"""
    kind = 'network'
    status_code = 502


class ProcessError(VPNManagerError):
    """Engine spawn, crash or startup timeout"""
    kind = 'process'
    status_code = 500


class CancelledError(ProcessError):
    """Caller cancelled a connect while the engine was starting"""
    kind = 'cancelled'
    status_code = 409


class ConflictError(VPNManagerError):
    """Resource is busy or in use"""
    kind = 'conflict'
    status_code = 409


class PersistenceError(VPNManagerError):
    """Writing state to disk failed"""
    kind = 'persistence'
    status_code = 500

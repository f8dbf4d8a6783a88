# errors.py — erreurs métier renvoyées en JSON par app.create_app


class ApiError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int | None = None, payload: dict | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload or {}

    def to_dict(self) -> dict:
        body = {"success": False, "message": self.message}
        body.update(self.payload)
        return body


class ValidationError(ApiError):
    status_code = 400


class AuthorizationError(ApiError):
    status_code = 403


class NotFoundError(ApiError):
    status_code = 404


class ConflictError(ApiError):
    status_code = 409

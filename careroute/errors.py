class CareRouteError(Exception):
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFound(CareRouteError):
    status_code = 404


class InvalidState(CareRouteError):
    status_code = 409


class InvalidTransition(InvalidState):
    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(f"Invalid status transition: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class Forbidden(CareRouteError):
    status_code = 403


class ValidationError(CareRouteError):
    status_code = 422

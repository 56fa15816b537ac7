from typing import Optional


class FlowException(Exception):
    """
    This is the base exception for all flow exceptions
    """
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message, self.status_code)

class FlowDBException(FlowException):
    """
    This is the exception for all flow database exceptions
    """
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message=self.message, status_code=self.status_code)

class FlowNotFoundException(FlowException):
    """
    This is the exception when flow is not found
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 404
        super().__init__(message=self.message, status_code=self.status_code)

class FlowValidationException(FlowException):
    """
    This is the exception for flow validation errors (step configuration not matching its kind)
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 400
        super().__init__(message=self.message, status_code=self.status_code)

class GraphMalformedException(FlowException):
    """
    Raised when a flow graph cannot be navigated: no entry step, more than one
    unconditional link leaving a step, or a link pointing at a missing step
    """
    def __init__(self, message: str, step_id: Optional[str] = None):
        self.message = message
        self.step_id = step_id
        self.status_code = 422
        super().__init__(message=self.message, status_code=self.status_code)

class StepExecutionFailedException(FlowException):
    """
    Raised when a step cannot be executed at all, e.g. an unknown step kind.
    The engine ends the invocation and records it on the session.
    """
    def __init__(self, message: str, step_id: Optional[str] = None):
        self.message = message
        self.step_id = step_id
        self.status_code = 502
        super().__init__(message=self.message, status_code=self.status_code)

class LoopBoundExceededException(FlowException):
    """
    Raised when one invocation executes more steps than allowed (cycle protection)
    """
    def __init__(self, message: str, step_id: Optional[str] = None):
        self.message = message
        self.step_id = step_id
        self.status_code = 508
        super().__init__(message=self.message, status_code=self.status_code)

class SessionPersistFailedException(FlowException):
    """
    Raised when the session could not be written after a completed loop
    """
    def __init__(self, message: str):
        self.message = message
        self.status_code = 503
        super().__init__(message=self.message, status_code=self.status_code)

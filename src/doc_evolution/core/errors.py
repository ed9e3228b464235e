from __future__ import annotations


class EvolutionError(Exception):
    """Base class for every error raised by the engine."""


class CompletionError(EvolutionError):
    retryable: bool = False


class RateLimitedError(CompletionError):
    retryable = True


class CompletionTimeoutError(CompletionError):
    retryable = True


class InvalidResponseError(CompletionError):
    pass


class ContentSourceError(EvolutionError):
    pass


class DocumentNotFoundError(ContentSourceError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class PersistenceError(EvolutionError):
    pass


class ImmutableRecordError(PersistenceError):
    pass


class GenerationError(EvolutionError):
    pass


class JobCancelledError(EvolutionError):
    pass


class UnknownMessageError(EvolutionError):
    def __init__(self, message_id: str) -> None:
        super().__init__(f"No recorded response for message: {message_id}")
        self.message_id = message_id


class ApprovalError(EvolutionError):
    """A job or history entry is not in a state that allows the request."""


class FeedbackAlreadyRecordedError(EvolutionError):
    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message {message_id} has already been rated")
        self.message_id = message_id

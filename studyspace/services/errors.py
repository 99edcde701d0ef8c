"""
Exception hierarchy for block generation and question answering.

Every error carries a short, human-readable ``message`` that is stored on
the failed block or question as-is, so messages are written for end users.

    GenerationError (base)
     BackendUnavailable  - local model server not reachable
     LocalModelError     - local model server returned an error / timed out
     MissingCredential   - remote backend has no API key
     InvalidCredential   - remote backend rejected the API key
     RemoteAPIError      - any other remote HTTP-layer failure
     EmptyOutput         - the model answered with nothing usable
     ParseFailure        - structured output could not be decoded
     ValidationFailure   - decoded output violates value bounds
     EmptyContext        - no usable document text
     EmptyQuestion       - question text is blank
     EmptyAnswer         - answer text is blank
"""
from typing import Optional


class GenerationError(Exception):
    """Base class; ``message`` is what the user sees."""

    default_message = "Generation failed."

    def __init__(self, message: Optional[str] = None):
        self.message = (message or "").strip() or self.default_message
        super().__init__(self.message)


class BackendUnavailable(GenerationError):
    default_message = "The local model is not available."


class LocalModelError(GenerationError):
    default_message = "The local model could not complete the request."


class MissingCredential(GenerationError):
    default_message = "OpenAI API key is not set."


class InvalidCredential(GenerationError):
    default_message = "OpenAI API key was rejected."


class RemoteAPIError(GenerationError):
    default_message = "OpenAI request failed."


class EmptyOutput(GenerationError):
    default_message = "The model returned an empty response."


class ParseFailure(GenerationError):
    default_message = "Could not read the model's response."


class ValidationFailure(GenerationError):
    default_message = "The model's response was incomplete or invalid."


class EmptyContext(GenerationError):
    default_message = "No content available to generate from. Add files or text to this Space."


class EmptyQuestion(GenerationError):
    default_message = "Question is empty."


class EmptyAnswer(GenerationError):
    default_message = "The model returned an empty answer."


def describe_failure(exc: BaseException) -> str:
    """User-facing message for any exception caught at an operation boundary."""
    if isinstance(exc, GenerationError):
        return exc.message
    return f"Generation failed: {str(exc)[:200]}"

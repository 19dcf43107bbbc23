"""Typed rejections raised by the room engine and its collaborators."""

from __future__ import annotations


class QuizRoomError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(QuizRoomError):
    code = "not-found"
    status_code = 404


class Unauthorized(QuizRoomError):
    code = "unauthorized"
    status_code = 403


class InvalidState(QuizRoomError):
    code = "invalid-state"
    status_code = 409


class QuizValidationError(QuizRoomError):
    code = "validation-error"
    status_code = 422


class CollaboratorFailure(QuizRoomError):
    code = "collaborator-failure"
    status_code = 502

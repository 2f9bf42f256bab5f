from __future__ import annotations


class OrgScopeError(Exception):
    pass


class NotFoundError(OrgScopeError):
    pass


class ValidationError(OrgScopeError):
    pass


class ConflictError(OrgScopeError):
    pass


class InvalidHierarchyError(ValidationError):
    pass


class CycleError(ValidationError):
    pass


class InactiveUnitError(ValidationError):
    pass


class InactiveUserError(ValidationError):
    pass


class CapacityExceededError(ValidationError):
    pass


class DuplicateCodeError(ConflictError):
    pass


class DuplicateAssignmentError(ConflictError):
    pass


class HeadConflictError(ConflictError):
    pass


class DuplicateGrantError(ConflictError):
    pass


class DuplicateUsernameError(ConflictError):
    pass

"""
Clear Ledger - Domain Errors

Engine write operations return (success, payload) tuples. On failure the
payload is a DomainError carrying a stable machine-readable code so the HTTP
layer can map it without sniffing message text.

ConsistencyViolation is the one error that is raised: it marks a programming
contract bug (an aggregation without an owner id) and must fail loudly.
"""

NOT_FOUND = 'not_found'
INVALID_TRANSITION = 'invalid_transition'
INVALID_AMOUNT = 'invalid_amount'
INVALID_INPUT = 'invalid_input'
INVALID_CONFIG = 'invalid_config'

ERROR_CODES = (NOT_FOUND, INVALID_TRANSITION, INVALID_AMOUNT, INVALID_INPUT, INVALID_CONFIG)


class DomainError:
    """A rejected operation: stable code, human message, optional details."""

    def __init__(self, code, message, details=None):
        if code not in ERROR_CODES:
            raise ValueError(f"Unknown domain error code: {code!r}")
        self.code = code
        self.message = message
        self.details = details

    @classmethod
    def not_found(cls, entity):
        # Same message whether the row is missing or owned by someone else
        return cls(NOT_FOUND, f"{entity} not found.")

    @classmethod
    def invalid_transition(cls, message, reason=None):
        return cls(INVALID_TRANSITION, message, {'reason': reason} if reason else None)

    @classmethod
    def invalid_amount(cls, message):
        return cls(INVALID_AMOUNT, message)

    @classmethod
    def invalid_input(cls, message, details=None):
        return cls(INVALID_INPUT, message, details)

    def to_dict(self):
        data = {'success': False, 'error': self.code, 'message': self.message}
        if self.details:
            data['details'] = self.details
        return data

    def __eq__(self, other):
        if not isinstance(other, DomainError):
            return NotImplemented
        return (self.code, self.message) == (other.code, other.message)

    def __repr__(self):
        return f"DomainError({self.code!r}, {self.message!r})"

    def __str__(self):
        return self.message


class ConsistencyViolation(RuntimeError):
    """Ledger aggregation attempted without an owner scope."""

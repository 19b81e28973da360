"""Exception hierarchy shared by core/, app/ and backtest/.

Insufficient history and malformed bar sequences are not errors: strategies
answer them with "no signal". Risk rejections are not errors either. What
remains are contract violations, execution failures and configuration
mistakes.
"""


class TradingError(Exception):
    """Base class for all trading-core errors."""


class InvariantViolation(TradingError):
    """A state invariant would be broken (fatal to the single operation)."""


class PositionStateError(InvariantViolation):
    """Illegal position transition, e.g. closing an already closed position."""


class ExecutionError(TradingError):
    """The execution collaborator did not execute the request."""


class ConfigError(TradingError, ValueError):
    """Invalid bot, strategy or risk configuration."""


class BotNotFoundError(TradingError, KeyError):
    """No bot registered under the given id."""


class BotStateError(TradingError):
    """Illegal bot lifecycle transition."""

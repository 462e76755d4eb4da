"""Exception hierarchy for the rule execution engine.

Two families matter to callers:

- ``ConfigurationError`` and its subclasses are fatal. They are raised before
  dispatch begins and abort the run.
- ``SandboxFault`` and ``DecodeError`` are per-invocation. The execution
  coordinator turns them into ``InvocationFailure`` records; they never escape
  a run.
"""


class SandlintError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(SandlintError):
    """Fatal problem detected before dispatch (bad config, tree or module)."""


class MalformedTreeError(ConfigurationError):
    """The document tree is cyclic or a child range escapes its parent."""


class ManifestError(ConfigurationError):
    """A rule module returned a manifest that does not match the schema."""


class RuleModuleError(ConfigurationError):
    """A rule module could not be read, compiled or queried for its manifest."""


class RuleConfigError(ConfigurationError):
    """Resolved rule options do not satisfy the rule's declared schema."""


class UnknownRuleError(ConfigurationError):
    """A rule id was requested that is not part of the run's rule set."""


class RunCancelled(SandlintError):
    """The run-level cancellation token fired while waiting on a resource."""


class SandboxFault(SandlintError):
    """A sandbox instance failed; the instance must not be reused."""

    kind = "trap"


class SandboxTrap(SandboxFault):
    """Guest code trapped or broke the buffer handshake."""

    kind = "trap"


class SandboxTimeout(SandboxFault):
    """The invocation exceeded its wall-clock budget and was interrupted."""

    kind = "timeout"


class MemoryLimitExceeded(SandboxFault):
    """The guest tried to grow its linear memory past the configured limit."""

    kind = "memory_limit"


class InstantiationError(SandboxFault):
    """A fresh sandbox instance could not be created for an invocation."""

    kind = "instantiation"


class DecodeError(SandlintError):
    """A rule response was not valid JSON or did not match the wire schema."""

    kind = "decode_error"


class SchemaMismatch(DecodeError):
    """A JSON value had the wrong type or was missing a required field."""

#
# Copyright contributors to the sqlserver-agent project
#


class AgentError(Exception):
    """Base class for errors raised by the agent."""
    pass


class ConfigurationError(AgentError):
    """The configuration file could not be read or parsed."""
    pass


class CollectionError(AgentError):
    """A collection pass could not run at all."""
    pass


class InvalidCredentialError(AgentError):
    """A credential configuration is incomplete or unsupported."""
    pass


class SecretResolutionError(AgentError):
    """A secret reference could not be resolved to a value."""
    pass


class QueryExecutionError(AgentError):
    """A guest query or command failed on the host."""
    pass


class DeliveryError(AgentError):
    """The remote service did not acknowledge a report."""
    pass

"""Core module - configuration, HTTP plumbing and observability.

Everything here is provider-neutral. Provider clients live in /connectors/,
durable state in /stores/, and the reconciliation engine in /sync/.
"""

__version__ = "1.0.0"

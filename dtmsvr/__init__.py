"""Configuration, LMDB/Redis/SQL storage backends, topic subscriptions and transaction records for a distributed transaction manager server."""

__version__ = "0.1.0"
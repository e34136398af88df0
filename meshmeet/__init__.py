"""Mesh meeting coordinator: peer discovery, connection lifecycle and shared state over aiortc."""

__all__ = [
	'config',
	'errors',
	'models',
	'roster',
	'protocol',
	'registry',
	'membership',
	'presence',
	'chat',
	'notices',
	'invite',
	'assistant',
	'session',
]

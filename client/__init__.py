"""client/ -- Python client for the auth service HTTP API.

Layer rule: client/ talks to the service over HTTP only. It imports nothing
from api/, auth/, or core/.
"""

"""
takrelay: CoT/TAK TCP relay for interactive device testing.

Every client that connects receives every complete message any client sends
(its own included). A message ends with the ``</event>`` terminator; its bytes
are forwarded unchanged. No authentication, encryption or validation.

Run with: python -m takrelay.run_relay <port>
"""
__all__ = ["console", "framing", "node", "run_relay"]

"""
Autoscaler for ECS services consuming from Solace queues.

Queue metrics are polled from the broker over SEMPv2 (following a DR failover between an
active and a standby message VPN), reduced over per-direction stabilization windows, and
turned into ECS desired task counts subject to step, boundary and cooldown limits.
"""

__version__ = "0.1.0"

"""In-process simulation of a switch-assisted replication pipeline: switch, leader, followers, network aggregator and load-generating clients."""

__version__ = "0.1.0"
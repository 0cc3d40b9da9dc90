"""
Buy Box Repricer

Multi-tenant buy box monitoring and automated repricing engine. On a recurring
schedule it checks every tracked listing across the connected marketplaces,
evaluates the organization's repricing rules and pushes new prices, metering
each check and price change against the organization's credit balance.
"""

__version__ = "1.0.0"
__author__ = "Buy Box Repricer Team"

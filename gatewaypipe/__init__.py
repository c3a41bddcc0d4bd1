"""Composable async proxy pipeline for API gateways: requests, responses, merging,
shadowing, static data, query filtering, logging, modifier hooks and HTTP backend proxies."""

__version__ = "0.1.0"
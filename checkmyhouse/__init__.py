"""
checkmyhouse package - ClickHouse monitoring and diagnostics dashboard service

Expose the controller and the REST API factory.
"""
from .controller import DashboardController
from .rest_api import DashboardAPI, create_api

__all__ = ["DashboardController", "DashboardAPI", "create_api"]

"""Outbound chat API.

Provides ApiGateway for sending and editing messages with the API
credential, plus the HTTP error mapping shared with the credential exchange.
"""

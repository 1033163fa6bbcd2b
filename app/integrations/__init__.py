"""
Integrations Package

External service integrations:
- Exchanges (Bybit v5 REST)
"""

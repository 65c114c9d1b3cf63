"""
Tipping Platform API and background jobs package
"""

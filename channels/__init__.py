"""Carrier channels used to reach the agent under test."""

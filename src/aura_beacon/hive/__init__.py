"""Envelope dispatch: membrane, metabolism, generator and the session connector."""

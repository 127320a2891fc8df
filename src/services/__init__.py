"""
Services Layer for the NPHIES Communication Workflow.

The NPHIES message workflow lives in src.services.nphies.
"""

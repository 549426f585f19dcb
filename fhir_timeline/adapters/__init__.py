"""Adapters for FHIR Timeline.

Archive adapters read exported archives from disk; storage adapters persist
resources and import jobs.
"""

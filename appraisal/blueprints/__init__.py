"""
Staff Appraisal Engine
Blueprint registry.
"""

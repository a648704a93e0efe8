"""
Business logic and services. Keeps app.py as glue-only (config, blueprints, extensions).

Every public operation returns a services.results.ServiceResult.
"""

"""
U2Net background removal microservice package.

Exposes reusable primitives for loading the models, preprocessing images,
running inference under bounded concurrency, and serving the FastAPI
application.
"""

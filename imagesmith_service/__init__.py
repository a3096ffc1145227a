"""
Image resize and palette microservice package.

Exposes reusable primitives for remote background removal, output policy,
resampling, colour quantization and swatch rendering, plus the FastAPI
application that serves them.
"""

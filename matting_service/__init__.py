"""
Local background-removal (matting) service package.

Exposes reusable primitives for loading the segmentation model, decoding
images, running inference, compositing cutouts, and serving the FastAPI
application.
"""

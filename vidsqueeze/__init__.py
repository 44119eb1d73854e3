"""Target-size video transcoding service.

Upload a video with a size in MB and download a two-pass encode that fits.

Modules:
    - core: Configuration, logging, metrics, tracing, auth, rate limiting
    - modules.transcoding: Probing, bitrate planning, encoding and delivery
"""

__version__ = "0.1.0"

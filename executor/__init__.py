from __future__ import annotations

# Media pipeline service: command generation, validation and sandboxed
# execution of ffmpeg / ImageMagick / SoX pipelines.

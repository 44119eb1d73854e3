"""Application modules.

- transcoding: Upload validation, ffprobe, two-pass ffmpeg encodes, job
  tracking, retention and artifact delivery
"""

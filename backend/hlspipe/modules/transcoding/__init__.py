"""Transcoding module: FFmpeg HLS renditions and master playlist assembly."""

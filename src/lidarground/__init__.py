"""lidarground: tiled ground classification of airborne LiDAR scans."""

__version__ = "0.1.0"

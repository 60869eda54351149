"""
GymSight configuration.

Every value can be overridden through an environment variable of the same name.
"""

import os

APP_NAME = "GymSight"

# =============================================================================
# Exercises
# =============================================================================
EXERCISES = ["Squat", "Push-up", "Lunge", "Plank", "Bicep Curl"]

# Analyze every 5 seconds
ANALYSIS_INTERVAL_MS = int(os.getenv("ANALYSIS_INTERVAL_MS", "5000"))

# =============================================================================
# Camera Settings
# =============================================================================
FRAME_SOURCE = os.getenv("FRAME_SOURCE", "browser")  # "browser" or "webcam"
CAMERA_ID = int(os.getenv("CAMERA_ID", "0"))
CAMERA_WIDTH = int(os.getenv("CAMERA_WIDTH", "640"))
CAMERA_HEIGHT = int(os.getenv("CAMERA_HEIGHT", "480"))
JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))  # 0-100
CAMERA_ACQUIRE_TIMEOUT_S = float(os.getenv("CAMERA_ACQUIRE_TIMEOUT_S", "30"))

# =============================================================================
# Vision Model (any OpenAI-compatible chat completions endpoint)
# =============================================================================
VISION_API_KEY = os.getenv("VISION_API_KEY") or os.getenv("OPENAI_API_KEY")
VISION_BASE_URL = os.getenv("VISION_BASE_URL")  # None = api.openai.com
VISION_MODEL = os.getenv("VISION_MODEL", "gpt-4o-mini")
VISION_TIMEOUT_S = float(os.getenv("VISION_TIMEOUT_S", "30"))

# =============================================================================
# Server
# =============================================================================
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

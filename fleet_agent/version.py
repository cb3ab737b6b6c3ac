"""
Version information for the fleet agent.

Version follows semantic versioning (https://semver.org/): MAJOR.MINOR.PATCH
"""
import datetime

# Version components
MAJOR = 1
MINOR = 2
PATCH = 0

# Build information
BUILD_DATE = datetime.datetime.now().strftime("%Y-%m-%d")
BUILD_NUMBER = "001"

# Full version string
__version__ = f"{MAJOR}.{MINOR}.{PATCH}"
__version_full__ = f"{__version__}+{BUILD_NUMBER} ({BUILD_DATE})"
__app_name__ = "Fleet Agent"

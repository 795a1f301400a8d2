#!/usr/bin/env python3
"""
Amadeus Companion - Main Application Entry Point
A conversational AI companion with visual-novel style text delivery.

Features:
- OpenAI, Gemini, Claude, Groq and Vertex AI providers
- Streamed replies with paged, paced text reveal
- Emotion tags and hidden model reasoning
- Multi-region failover for Vertex AI
- Long-term memory across sessions

Version: 1.0.0
Python: 3.10+
"""

import sys
import asyncio
import logging
from pathlib import Path

# Add project root to Python path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

# Import core modules
from amadeus.core.application import CompanionApplication
from amadeus.core.config import load_config
from amadeus.utils.logger import setup_logging

def check_python_version():
    """Ensure compatible Python version."""
    if sys.version_info < (3, 10):
        print("❌ Python 3.10 or higher is required!")
        print(f"Current version: {sys.version}")
        sys.exit(1)
    print(f"✅ Python version: {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}")

def check_dependencies():
    """Check if all required dependencies are installed."""
    required_packages = ['httpx', 'pydantic', 'dotenv', 'yaml', 'jwt']

    missing_packages = []

    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing_packages.append(package)

    if missing_packages:
        print("❌ Missing required packages:")
        for pkg in missing_packages:
            print(f"   - {pkg}")
        print("\nPlease install missing packages with:")
        print("pip install -e .")
        sys.exit(1)

    print("✅ All required dependencies are installed")

def main():
    """Main application entry point."""
    print("🤖 Amadeus Companion - Starting Application...")
    print("=" * 50)

    # Check system requirements
    check_python_version()
    check_dependencies()

    # Load configuration
    config = load_config()

    # Setup logging
    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)
    logger.info("Starting Amadeus Companion")
    logger.info(f"Configuration loaded: {config.app_name}")

    try:
        # Initialize and run the main application
        app = CompanionApplication(config)
        asyncio.run(app.run())

    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
        print("\n👋 Goodbye!")
    except Exception as e:
        logger.error(f"Application error: {e}", exc_info=True)
        print(f"❌ Application error: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()

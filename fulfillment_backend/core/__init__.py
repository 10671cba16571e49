# Core module

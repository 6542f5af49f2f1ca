# Core configuration, logging and error handling

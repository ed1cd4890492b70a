# Core package - foundational components
#
# Modules:
# - config: Application settings
# - logging: Structured logging
# - errors: RepositoryError / DeveloperError
# - storage: MongoDB client, query model and paginated repositories

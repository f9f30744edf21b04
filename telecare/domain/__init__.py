"""Business domains - each package holds schemas, repository, service and router"""

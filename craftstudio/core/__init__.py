"""Core services shared by the config, daemon and instance subsystems"""

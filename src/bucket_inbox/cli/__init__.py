"""Command-line interface for Bucket Inbox"""

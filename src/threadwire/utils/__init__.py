"""Shared helpers for Threadwire"""

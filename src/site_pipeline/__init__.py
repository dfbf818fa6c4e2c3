"""
Site pipeline: GitHub source, CodeBuild build and S3 deploy behind CloudFront.

Contains the configuration models, the stack assembly that renders them into a
CloudFormation template, and the commands that deploy and operate the stack.
"""

__version__ = "0.1.0"

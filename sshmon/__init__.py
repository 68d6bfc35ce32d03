"""sshmon - SSH honeypot that emulates a small Linux device."""

__version__ = "1.0.0"

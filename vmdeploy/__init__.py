"""Build a vSphere VM template, deploy VMs with Terraform, and verify they answer."""

__version__ = '0.1.0'

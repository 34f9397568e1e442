"""Azure virtual machine management sample"""

__version__ = '0.1.0'

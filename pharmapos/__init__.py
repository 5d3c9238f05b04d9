"""
PharmaPOS Core
Stock ledger and sales order lifecycle for pharmacy point of sale
"""

__version__ = "1.0.0"

from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction

from products.services import ProductService
from users.services import CustomerService

SEED_CUSTOMERS = [
    {"name": "John Doe", "email": "john@example.com"},
    {"name": "Jane Smith", "email": "jane@example.com"},
    {"name": "Bob Johnson", "email": "bob@example.com"},
]

SEED_PRODUCTS = [
    {
        "name": "Smartphone",
        "description": "High-end smartphone with advanced features",
        "price": Decimal("899.99"),
        "stock": 50,
    },
    {
        "name": "Laptop",
        "description": "Powerful laptop for professional use",
        "price": Decimal("1299.99"),
        "stock": 30,
    },
    {
        "name": "Wireless Headphones",
        "description": "Noise-cancelling over-ear headphones",
        "price": Decimal("199.99"),
        "stock": 100,
    },
    {
        "name": "Smartwatch",
        "description": "Fitness tracking and notifications on the wrist",
        "price": Decimal("249.99"),
        "stock": 75,
    },
    {
        "name": "Tablet",
        "description": "Lightweight tablet for reading and streaming",
        "price": Decimal("499.99"),
        "stock": 40,
    },
]


class Command(BaseCommand):
    help = "Seed demo customers and products. Safe to run repeatedly."

    @transaction.atomic
    def handle(self, *args, **options):
        for row in SEED_CUSTOMERS:
            if CustomerService.find_by_email(row["email"]):
                self.stdout.write(f"Customer {row['name']} already exists")
                continue
            CustomerService.create_customer(**row)
            self.stdout.write(self.style.SUCCESS(f"Customer {row['name']} created"))

        for row in SEED_PRODUCTS:
            if ProductService.find_by_name(row["name"]):
                self.stdout.write(f"Product {row['name']} already exists")
                continue
            ProductService.create_product(**row)
            self.stdout.write(self.style.SUCCESS(f"Product {row['name']} created"))

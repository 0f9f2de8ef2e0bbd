from django.core.management.base import BaseCommand
from commerce.models import Product


class Command(BaseCommand):
    help = 'Seeds the database with 3 fixed products and their opening stock'

    def add_arguments(self, parser):
        parser.add_argument('--stock', type=int, default=25, help='Units in stock for each new product')

    def handle(self, *args, **options):
        products_data = [
            {
                'name': 'Wireless Headphones',
                'description': 'Premium wireless headphones with noise cancellation and 30-hour battery life.',
                'price': '16599.00',
                'image_url': 'https://images.unsplash.com/photo-1505740420928-5e560c06d30e?w=500',
            },
            {
                'name': 'Smart Watch',
                'description': 'Smartwatch with fitness tracking, heart rate monitor and smartphone notifications.',
                'price': '24899.00',
                'image_url': 'https://images.unsplash.com/photo-1523275335684-37898b6baf30?w=500',
            },
            {
                'name': 'Mouse',
                'description': 'Ergonomic wireless mouse with precision tracking.',
                'price': '4149.00',
                'image_url': 'https://images.unsplash.com/photo-1527864550417-7fd91fc51a46?w=500',
            },
        ]

        for product_data in products_data:
            product, created = Product.objects.get_or_create(
                name=product_data['name'],
                defaults={**product_data, 'stock': options['stock']},
            )
            if created:
                self.stdout.write(
                    self.style.SUCCESS(f'Created product: {product.name} ({product.stock} in stock)')
                )
            else:
                self.stdout.write(
                    self.style.WARNING(f'Product already exists: {product.name} ({product.stock} in stock)')
                )

        self.stdout.write(
            self.style.SUCCESS('Successfully seeded products!')
        )

from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('trips', '0001_initial'),
    ]

    operations = [
        migrations.AddConstraint(
            model_name='trip',
            constraint=models.UniqueConstraint(
                condition=models.Q(('status__in', ['requested', 'driver_assigned', 'accepted', 'in_progress'])),
                fields=('customer_id',),
                name='one_active_trip_per_customer',
            ),
        ),
    ]

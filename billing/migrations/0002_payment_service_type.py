# Purchase intents remember which service the package belongs to

from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("billing", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="payment",
            name="service_type",
            field=models.CharField(default="hotspot", max_length=10),
        ),
    ]

import pandas as pd
import numpy as np
import uuid
from datetime import datetime, timezone, timedelta

def generate_mock_providers(num_pharmacies=40, num_partners=60, output_file="mock_providers.csv"):
    """
    Generates pharmacies and delivery partners scattered around a city centre.
    Pharmacies are static; delivery partners carry a GPS ping timestamp, and
    some of those pings are deliberately older than the 2 minute freshness window
    so the selector's staleness rule gets exercised.
    """
    # Center around Harare, Zimbabwe
    CENTER_LAT = -17.824858
    CENTER_LON = 31.053028

    now = datetime.now(timezone.utc)
    data = []

    # 1. Pharmacies within ~15km (roughly 0.15 degrees)
    for pharmacy_index in range(num_pharmacies):
        data.append({
            "provider_id": f"ph_{str(uuid.uuid4())[:8]}",
            "kind": "pharmacy",
            "name": f"Pharmacy {pharmacy_index+1}",
            "lat": np.round(CENTER_LAT + np.random.uniform(-0.15, 0.15), 6),
            "lon": np.round(CENTER_LON + np.random.uniform(-0.15, 0.15), 6),
            "is_available": bool(np.random.random() < 0.9),
            "is_verified": bool(np.random.random() < 0.95),
            "location_updated_at": "",
        })

    # 2. Delivery partners, 25% of them with a stale ping
    for partner_index in range(num_partners):
        ping_age_s = np.random.randint(180, 900) if np.random.random() < 0.25 else np.random.randint(0, 110)
        data.append({
            "provider_id": f"dp_{str(uuid.uuid4())[:8]}",
            "kind": "delivery_partner",
            "name": f"Partner {partner_index+1}",
            "lat": np.round(CENTER_LAT + np.random.uniform(-0.2, 0.2), 6),
            "lon": np.round(CENTER_LON + np.random.uniform(-0.2, 0.2), 6),
            "is_available": bool(np.random.random() < 0.8),
            "is_verified": True,
            "location_updated_at": (now - timedelta(seconds=int(ping_age_s))).isoformat(),
        })

    # 3. Save to CSV
    df = pd.DataFrame(data)
    df.to_csv(output_file, index=False)
    print(f"✅ Generated {num_pharmacies} pharmacies and {num_partners} delivery partners into '{output_file}'")

    print("\nAvailability by kind:")
    summary = df.groupby("kind")["is_available"].agg(["sum", "count"])
    for kind, row in summary.iterrows():
        print(f"  {kind}: {int(row['sum'])}/{int(row['count'])} available")

if __name__ == "__main__":
    generate_mock_providers()

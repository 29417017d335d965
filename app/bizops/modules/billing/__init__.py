"""Line pricing shared by quotations and invoices."""

# Route modules

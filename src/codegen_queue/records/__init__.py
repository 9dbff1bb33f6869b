"""Result records that job handlers write outcomes into."""

"""Point-in-time recovery from binary logs kept in S3 storage."""
"""fleet unit and functional tests"""

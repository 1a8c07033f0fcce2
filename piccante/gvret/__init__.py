"""Reserved for GVRET binary protocol support; it holds no modules."""